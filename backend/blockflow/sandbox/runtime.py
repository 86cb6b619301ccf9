"""SandboxRuntime - compiles and runs automation scripts under fixed limits."""

import builtins
import logging
import threading
from dataclasses import dataclass
from types import CodeType
from typing import Any, Callable

from pydantic import BaseModel, Field

from blockflow.config import (
    SCRIPT_MAX_CALL_DEPTH,
    SCRIPT_MAX_COLLECTION_SIZE,
    SCRIPT_MAX_MODULES,
    SCRIPT_MAX_OPERATIONS,
    SCRIPT_MAX_STRING_SIZE,
    SCRIPT_TIMEOUT_MS,
)
from blockflow.errors import (
    BlockflowError,
    CapabilityDenied,
    ResourceLimitExceeded,
    ScriptError,
    ScriptSyntaxError,
)
from blockflow.sandbox.budget import Abort, ExecutionBudget
from blockflow.sandbox.guards import ScriptGuards
from blockflow.sandbox.host import HostBridge, InMemoryHost
from blockflow.sandbox.policy import SCRIPT_FILENAME, compile_restricted

logger = logging.getLogger(__name__)

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable",
    "chr", "complex", "dict", "divmod", "enumerate", "filter", "float", "frozenset",
    "hash", "hex", "int", "isinstance", "issubclass", "len", "list", "map", "max",
    "min", "next", "oct", "ord", "repr", "reversed", "round", "set", "slice",
    "sorted", "str", "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "IndexError",
    "KeyError", "LookupError", "NameError", "NotImplementedError", "OverflowError",
    "RuntimeError", "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
)  # fmt: skip

# Module-level name a script assigns to hand a value back to the caller
RESULT_NAME = "result"


class SandboxLimits(BaseModel):
    """Resource limits applied to every run."""

    max_operations: int = Field(default=100_000, gt=0)
    max_call_depth: int = Field(default=64, gt=0)
    max_modules: int = Field(default=10, ge=0)
    max_string_size: int = Field(default=10_000, gt=0)
    max_collection_size: int = Field(default=1_000, gt=0)
    # 0 disables the wall-clock deadline
    timeout_ms: int = Field(default=1_000, ge=0)

    model_config = {"frozen": True}

    @classmethod
    def from_env(cls) -> "SandboxLimits":
        """Limits from the SCRIPT_* environment settings."""
        return cls(
            max_operations=SCRIPT_MAX_OPERATIONS,
            max_call_depth=SCRIPT_MAX_CALL_DEPTH,
            max_modules=SCRIPT_MAX_MODULES,
            max_string_size=SCRIPT_MAX_STRING_SIZE,
            max_collection_size=SCRIPT_MAX_COLLECTION_SIZE,
            timeout_ms=SCRIPT_TIMEOUT_MS,
        )


@dataclass(frozen=True)
class CompiledUnit:
    """A script that passed the static policy, ready to run."""

    source: str
    code: CodeType


@dataclass(frozen=True)
class RuntimeResult:
    """Outcome of a successful run."""

    value: Any
    printed: str
    steps: int


class ScriptContext:
    """Globals, guards and budget for one run of one script.

    Callbacks a script registers with ``on_state_change`` keep the context
    alive; each invocation re-arms the budget and runs under the same limits.
    Invocations are serialized per context.
    """

    def __init__(self, limits: SandboxLimits, host: HostBridge):
        self.limits = limits
        self.host = host
        self.budget = ExecutionBudget(
            max_operations=limits.max_operations,
            max_call_depth=limits.max_call_depth,
            timeout_ms=limits.timeout_ms,
            passthrough_modules=frozenset({ScriptGuards.__module__}),
        )
        self.guards = ScriptGuards(
            self.budget,
            max_modules=limits.max_modules,
            max_string_size=limits.max_string_size,
            max_collection_size=limits.max_collection_size,
        )
        self.printed: list[str] = []
        self._printed_size = 0
        self._lock = threading.RLock()
        self._active = False
        self.globals = self._build_globals()

    def _build_globals(self) -> dict[str, Any]:
        safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
        safe.update(
            {
                "__import__": self.guards.import_,
                "format": self.guards.format_,
                "iter": self.guards.iter_,
                "pow": self.guards.pow_,
                "print": self._print,
                "range": self.guards.range_,
                "sum": self.guards.sum_,
            }
        )
        return {
            "__builtins__": safe,
            "__name__": "automation",
            **self.guards.bindings(),
            "get_state": self._get_state,
            "get_attributes": self._get_attributes,
            "set_state": self._set_state,
            "call_service": self._call_service,
            "on_state_change": self._on_state_change,
        }

    # ==================== Execution ====================

    def execute(self, fn: Callable[[], Any]) -> Any:
        """Run script code under a fresh budget, mapping failures to typed errors."""
        with self._lock:
            if self._active:
                raise CapabilityDenied(
                    "callback", "State change callbacks cannot run while the script is running"
                )
            self._active = True
            try:
                return self._execute(fn)
            finally:
                self._active = False

    def _execute(self, fn: Callable[[], Any]) -> Any:
        try:
            return self.budget.run(fn)
        except Abort:
            raise self.budget.tripped from None
        except RecursionError as e:
            raise ResourceLimitExceeded("call_depth", "Script recursion is too deep") from e
        except MemoryError as e:
            raise ResourceLimitExceeded("memory", "Script ran out of memory") from e
        except BlockflowError:
            raise
        except Exception as e:
            raise ScriptError(
                f"{type(e).__name__}: {e}", lineno=_script_line(e.__traceback__)
            ) from e

    def _print(self, *args: Any, sep: str = " ", end: str = "\n") -> None:
        text = str(sep).join(str(arg) for arg in args) + str(end)
        self._printed_size += len(text)
        if self._printed_size > self.limits.max_string_size:
            self.guards.check_length("string_size", self._printed_size)
        self.printed.append(text)

    # ==================== Host capabilities ====================

    def _host_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except CapabilityDenied as e:
            self.budget.trip(e)

    def _get_state(self, entity_id):
        return self._host_call(self.host.get_state, str(entity_id))

    def _get_attributes(self, entity_id):
        return self._host_call(self.host.get_attributes, str(entity_id))

    def _set_state(self, entity_id, state):
        return self._host_call(self.host.set_state, str(entity_id), str(state))

    def _call_service(self, domain, service, entity_id, data=None):
        if data is not None and not isinstance(data, dict):
            raise TypeError("call_service data must be a dict")
        return self._host_call(
            self.host.call_service, str(domain), str(service), str(entity_id), data
        )

    def _on_state_change(self, entity_id, callback):
        if not callable(callback):
            raise TypeError("on_state_change callback must be callable")

        def invoke(changed_entity_id: str, new_state: str) -> Any:
            return self.execute(lambda: callback(changed_entity_id, new_state))

        return self._host_call(self.host.on_state_change, str(entity_id), invoke)


def _script_line(tb) -> int | None:
    """Line of the innermost script frame in a traceback."""
    lineno = None
    while tb is not None:
        if tb.tb_frame.f_code.co_filename == SCRIPT_FILENAME:
            lineno = tb.tb_lineno
        tb = tb.tb_next
    return lineno


class SandboxRuntime:
    """Compiles script text and runs it in isolation.

    Every run gets fresh globals, a fresh budget and its own guards, so
    concurrent runs share no script state.

    Example:
        runtime = SandboxRuntime(SandboxLimits.from_env())
        unit = runtime.compile("result = 1 + 1")
        runtime.run(unit).value  # 2
    """

    def __init__(self, limits: SandboxLimits | None = None):
        self.limits = limits or SandboxLimits()

    def compile(self, text: str) -> CompiledUnit:
        """Parse and statically validate a script without running it.

        Raises:
            ScriptSyntaxError: The text does not parse or breaks the policy.
        """
        if not isinstance(text, str):
            raise ScriptSyntaxError(f"Script must be text, got {type(text).__name__}")
        return CompiledUnit(source=text, code=compile_restricted(text))

    def run(self, unit: CompiledUnit, host: HostBridge | None = None) -> RuntimeResult:
        """Execute a compiled script.

        Args:
            unit: Output of ``compile``.
            host: Capability surface for the script; a fresh empty
                InMemoryHost when omitted.

        Returns:
            The module-level ``result`` value, captured print output and the
            number of steps used.

        Raises:
            ResourceLimitExceeded: A limit was hit; the run was aborted.
            CapabilityDenied: The script used a capability it may not use.
            ScriptError: The script raised an exception of its own.
        """
        context = ScriptContext(self.limits, host if host is not None else InMemoryHost())
        try:
            context.execute(lambda: exec(unit.code, context.globals))
        except ResourceLimitExceeded as e:
            logger.warning(f"Script aborted: {e.message}")
            raise

        logger.debug(f"Script finished in {context.budget.steps} steps")
        return RuntimeResult(
            value=context.globals.get(RESULT_NAME),
            printed="".join(context.printed),
            steps=context.budget.steps,
        )

    def run_script(self, text: str, host: HostBridge | None = None) -> RuntimeResult:
        """Compile and run in one step."""
        return self.run(self.compile(text), host)
