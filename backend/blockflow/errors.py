"""Exception hierarchy for graph compilation, sandbox execution and storage.

Every failure in the compile/validate/persist pipeline is raised as one of
these types so callers can tell a bad graph from a bad script, a runaway
script from a buggy one, and a stale write from a missing record.
"""

from typing import Any


class BlockflowError(Exception):
    """Base exception for all blockflow errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Rejected Automation draft, attached by the repository when a
        # create/update fails validation.
        self.draft: Any = None


# ==================== Graph compilation ====================


class CompileError(BlockflowError):
    """A block graph could not be turned into script text."""

    def __init__(self, message: str, node_type: str | None = None):
        super().__init__(message)
        self.node_type = node_type


class StructuralError(CompileError):
    """The graph, or one of its input entries, is not shaped as expected."""

    def __init__(self, message: str, key: str | None = None, node_type: str | None = None):
        super().__init__(message, node_type=node_type)
        self.key = key


class UnknownBlockType(CompileError):
    """A node references a block type missing from the catalog."""

    def __init__(self, node_type: str):
        super().__init__(f"Block definition not found for type: {node_type}", node_type)


class MissingTemplate(CompileError):
    """The block type exists but carries no template text."""

    def __init__(self, node_type: str):
        super().__init__(f"No template found for block type: {node_type}", node_type)


class TemplateRenderError(CompileError):
    """A block template failed to parse or render."""

    def __init__(self, node_type: str, message: str):
        super().__init__(f"Template rendering error in '{node_type}': {message}", node_type)
        self.detail = message


class CycleDetected(CompileError):
    """The graph loops back on itself or nests deeper than allowed."""

    pass


# ==================== Sandbox ====================


class ScriptSyntaxError(BlockflowError):
    """Script text failed to parse or violates the sandbox policy."""

    def __init__(self, message: str, lineno: int | None = None):
        super().__init__(f"Script compilation error: {message}")
        self.lineno = lineno


class SandboxRuntimeError(BlockflowError):
    """Base class for failures while a compiled script runs."""

    pass


class ResourceLimitExceeded(SandboxRuntimeError):
    """A run hit one of the sandbox limits and was aborted."""

    def __init__(self, limit: str, message: str):
        super().__init__(message)
        self.limit = limit


class ScriptError(SandboxRuntimeError):
    """The script raised an ordinary exception of its own."""

    def __init__(self, message: str, lineno: int | None = None):
        super().__init__(message)
        self.lineno = lineno


class CapabilityDenied(SandboxRuntimeError):
    """The script attempted a host operation it is not allowed to perform."""

    def __init__(self, capability: str, message: str):
        super().__init__(message)
        self.capability = capability


# ==================== Repository ====================


class RepositoryError(BlockflowError):
    """Base class for automation repository failures."""

    pass


class AutomationNotFound(RepositoryError):
    """No automation is registered under the given id."""

    def __init__(self, automation_id: str):
        super().__init__(f"Automation not found: {automation_id}")
        self.automation_id = automation_id


class VersionConflict(RepositoryError):
    """The caller's expected version does not match the stored version."""

    def __init__(self, automation_id: str, expected: int, actual: int):
        super().__init__(
            f"Version mismatch - automation has been modified "
            f"(expected {expected}, found {actual})"
        )
        self.automation_id = automation_id
        self.expected = expected
        self.actual = actual
