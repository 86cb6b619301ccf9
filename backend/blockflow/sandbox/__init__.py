"""Sandboxed compilation and execution of automation scripts."""

from blockflow.sandbox.host import HostBridge, InMemoryHost, ServiceCall
from blockflow.sandbox.runtime import (
    CompiledUnit,
    RuntimeResult,
    SandboxLimits,
    SandboxRuntime,
)

__all__ = [
    "CompiledUnit",
    "HostBridge",
    "InMemoryHost",
    "RuntimeResult",
    "SandboxLimits",
    "SandboxRuntime",
    "ServiceCall",
]
