"""Step, call-depth and wall-clock accounting for running scripts.

The budget is a ``sys.settrace`` hook that follows frames compiled from
automation scripts, plus standard library frames a script calls into (the
modules scripts may import run there). Host code called by a script is not
traced and does not consume steps. Call depth is only counted for script
frames.
"""

import functools
import os
import sys
import sysconfig
import time
from typing import Any, Callable

from blockflow.errors import BlockflowError, ResourceLimitExceeded
from blockflow.sandbox.policy import SCRIPT_FILENAME

# Steps between wall-clock checks
DEADLINE_CHECK_INTERVAL = 1000


def _install_dirs(*names: str) -> tuple[str, ...]:
    paths = sysconfig.get_paths()
    return tuple({os.path.join(paths[name], "") for name in names if name in paths})


LIBRARY_DIRS = _install_dirs("stdlib", "platstdlib") + (
    os.path.join(os.path.dirname(functools.__file__), ""),
)
# Installed packages can live below the standard library directory
SITE_DIRS = _install_dirs("purelib", "platlib")


@functools.lru_cache(maxsize=1024)
def is_library_file(filename: str) -> bool:
    """Whether a code object's filename belongs to the standard library."""
    return filename.startswith(LIBRARY_DIRS) and not filename.startswith(SITE_DIRS)


class Abort(BaseException):
    """Unwinds a script that hit a limit or was denied a capability.

    Derives from BaseException so ``except Exception`` in a script cannot
    stop it.
    """


class ExecutionBudget:
    """Counts script steps against a set of limits.

    Once tripped, the budget stays tripped until re-armed with ``reset``; the
    recorded error is what the caller eventually sees.

    Frames of ``passthrough_modules`` sit between a script and the library
    code it calls (the run-time guards) and do not hide that library code
    from the budget.
    """

    def __init__(
        self,
        max_operations: int,
        max_call_depth: int,
        timeout_ms: int = 0,
        passthrough_modules: frozenset[str] = frozenset(),
    ):
        self.max_operations = max_operations
        self.max_call_depth = max_call_depth
        self.timeout_ms = timeout_ms
        self.passthrough_modules = passthrough_modules
        self.steps = 0
        self.depth = 0
        self.modules: set[str] = set()
        self.tripped: BlockflowError | None = None
        self._deadline: float | None = None

    def reset(self) -> None:
        """Re-arm the budget for a fresh run or callback invocation."""
        self.steps = 0
        self.depth = 0
        self.tripped = None
        self._deadline = None
        if self.timeout_ms > 0:
            self._deadline = time.monotonic() + self.timeout_ms / 1000

    def trip(self, error: BlockflowError):
        """Record the error (first one wins) and unwind the script."""
        if self.tripped is None:
            self.tripped = error
        raise Abort(self.tripped)

    def run(self, fn: Callable[[], Any]) -> Any:
        """Call ``fn`` with the trace hook installed, restoring the previous hook."""
        self.reset()
        previous = sys.gettrace()
        sys.settrace(self._trace_call)
        try:
            return fn()
        finally:
            sys.settrace(previous)

    def _called_from_script(self, frame) -> bool:
        caller = frame.f_back
        while caller is not None:
            filename = caller.f_code.co_filename
            if filename == SCRIPT_FILENAME:
                return True
            if not (
                is_library_file(filename)
                or caller.f_globals.get("__name__") in self.passthrough_modules
            ):
                return False
            caller = caller.f_back
        return False

    def _trace_call(self, frame, event, arg):
        filename = frame.f_code.co_filename
        if filename != SCRIPT_FILENAME:
            if not (is_library_file(filename) and self._called_from_script(frame)):
                return None
            if self.tripped is not None:
                raise Abort(self.tripped)
            return self._trace_library

        if self.tripped is not None:
            raise Abort(self.tripped)

        self.depth += 1
        if self.depth > self.max_call_depth:
            self.trip(
                ResourceLimitExceeded(
                    "call_depth", f"Script call depth exceeded {self.max_call_depth}"
                )
            )
        return self._trace_local

    def _trace_local(self, frame, event, arg):
        if self.tripped is not None:
            raise Abort(self.tripped)

        if event == "line":
            self._step()
        elif event == "return":
            self.depth -= 1
        return self._trace_local

    def _trace_library(self, frame, event, arg):
        if self.tripped is not None:
            raise Abort(self.tripped)

        if event == "line":
            self._step()
        return self._trace_library

    def _step(self) -> None:
        self.steps += 1
        if self.steps > self.max_operations:
            self.trip(
                ResourceLimitExceeded(
                    "operations",
                    f"Script exceeded {self.max_operations} operations",
                )
            )
        if (
            self._deadline is not None
            and self.steps % DEADLINE_CHECK_INTERVAL == 0
            and time.monotonic() > self._deadline
        ):
            self.trip(
                ResourceLimitExceeded("timeout", f"Script ran longer than {self.timeout_ms} ms")
            )
