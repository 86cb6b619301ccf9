"""Host capabilities exposed to running scripts.

Scripts reach the outside world only through a ``HostBridge``: reading and
writing entity state, calling services and subscribing to state changes.
Entities and services are addressed by opaque string identifiers.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from blockflow.errors import CapabilityDenied

logger = logging.getLogger(__name__)

StateCallback = Callable[[str, str], Any]


class HostBridge(Protocol):
    """The capability surface a sandboxed script may use."""

    def get_state(self, entity_id: str) -> str | None: ...

    def get_attributes(self, entity_id: str) -> dict[str, Any]: ...

    def set_state(self, entity_id: str, state: str) -> None: ...

    def call_service(
        self, domain: str, service: str, entity_id: str, data: dict[str, Any] | None = None
    ) -> None: ...

    def on_state_change(self, entity_id: str, callback: StateCallback) -> None: ...


@dataclass(frozen=True)
class ServiceCall:
    """A recorded service invocation."""

    domain: str
    service: str
    entity_id: str
    data: dict[str, Any] = field(default_factory=dict)


class InMemoryHost:
    """A HostBridge backed by dictionaries.

    Used for validation runs, the CLI and tests. ``notify`` plays the part of
    the external state source: it records the new state and invokes every
    callback registered for the entity.

    Example:
        host = InMemoryHost({"light.kitchen": "off"})
        runtime.run(unit, host)
        host.notify("light.kitchen", "on")
    """

    def __init__(
        self,
        states: dict[str, str] | None = None,
        attributes: dict[str, dict[str, Any]] | None = None,
        read_only: bool = False,
    ):
        self.states: dict[str, str] = dict(states or {})
        self.attributes: dict[str, dict[str, Any]] = {
            entity_id: dict(values) for entity_id, values in (attributes or {}).items()
        }
        self.read_only = read_only
        self.service_calls: list[ServiceCall] = []
        self.subscriptions: dict[str, list[StateCallback]] = {}
        self._lock = threading.Lock()

    def get_state(self, entity_id: str) -> str | None:
        with self._lock:
            return self.states.get(entity_id)

    def get_attributes(self, entity_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self.attributes.get(entity_id, {}))

    def set_state(self, entity_id: str, state: str) -> None:
        if self.read_only:
            raise CapabilityDenied("set_state", f"Host is read-only; cannot set {entity_id}")
        with self._lock:
            self.states[entity_id] = state

    def call_service(
        self, domain: str, service: str, entity_id: str, data: dict[str, Any] | None = None
    ) -> None:
        if self.read_only:
            raise CapabilityDenied(
                "call_service", f"Host is read-only; cannot call {domain}.{service}"
            )
        with self._lock:
            self.service_calls.append(ServiceCall(domain, service, entity_id, dict(data or {})))
        logger.debug(f"Service call: {domain}.{service} on {entity_id}")

    def on_state_change(self, entity_id: str, callback: StateCallback) -> None:
        with self._lock:
            self.subscriptions.setdefault(entity_id, []).append(callback)

    def notify(self, entity_id: str, new_state: str) -> list[Any]:
        """Record a state change and run the entity's callbacks in order.

        Returns:
            The callbacks' return values.

        Raises:
            SandboxRuntimeError: A callback failed; later callbacks do not run.
        """
        with self._lock:
            self.states[entity_id] = new_state
            callbacks = list(self.subscriptions.get(entity_id, []))

        return [callback(entity_id, new_state) for callback in callbacks]
