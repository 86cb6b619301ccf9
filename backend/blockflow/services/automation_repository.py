"""AutomationRepository - validated, versioned writes of automations.

Every create and update runs the graph through the compiler and the sandbox
before anything is stored:

    Draft -> Compiling -> Valid -> Persisted
                       -> Invalid -> Rejected

A rejected write raises the typed compile or syntax error. The error carries
the would-be record on ``error.draft``, annotated with ``compilation_error``
and without a script; nothing is persisted and the index is untouched.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from blockflow.catalog import BlockCatalog
from blockflow.codegen import GraphCompiler
from blockflow.db import AutomationStore
from blockflow.errors import (
    AutomationNotFound,
    CompileError,
    ScriptSyntaxError,
    VersionConflict,
)
from blockflow.models import Automation, AutomationCreate, AutomationUpdate
from blockflow.sandbox import SandboxRuntime
from blockflow.services.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> datetime:
    """Get the current UTC time."""
    return datetime.now(timezone.utc)


class AutomationRepository:
    """In-memory index of automations backed by an AutomationStore.

    Reads are served from the index under the shared lock. Writes take the
    exclusive lock only to commit: compilation runs in a worker thread
    beforehand, and the version is re-checked once the lock is held.

    Example:
        repository = AutomationRepository(AutomationStore(), catalog)
        await repository.load()
        automation = await repository.create(AutomationCreate(name="Porch", graph=workspace))
    """

    def __init__(
        self,
        store: AutomationStore,
        catalog: BlockCatalog,
        compiler: GraphCompiler | None = None,
        runtime: SandboxRuntime | None = None,
    ):
        self.store = store
        self.compiler = compiler or GraphCompiler()
        self.runtime = runtime or SandboxRuntime()
        self._catalog = catalog
        self._index: dict[str, Automation] = {}
        self._lock = ReadWriteLock()

    @property
    def catalog(self) -> BlockCatalog:
        return self._catalog

    def set_catalog(self, catalog: BlockCatalog) -> None:
        """Use a new catalog snapshot for subsequent compiles."""
        self._catalog = catalog

    async def load(self) -> int:
        """Populate the index from the store. Returns the number loaded."""
        automations = await self.store.list_all()
        async with self._lock.write():
            self._index = {automation.id: automation for automation in automations}
        logger.info(f"Loaded {len(automations)} automations")
        return len(automations)

    # ==================== Reads ====================

    async def list(self) -> list[Automation]:
        """All automations, most recently updated first."""
        async with self._lock.read():
            automations = list(self._index.values())
        return sorted(automations, key=lambda automation: automation.updated_at, reverse=True)

    async def get(self, automation_id: str) -> Automation | None:
        async with self._lock.read():
            return self._index.get(automation_id)

    # ==================== Writes ====================

    async def create(self, data: AutomationCreate) -> Automation:
        """Compile-validate and store a new automation.

        Raises:
            CompileError: The graph could not be turned into a script.
            ScriptSyntaxError: The generated script failed sandbox validation.
        """
        now = _now()
        draft = Automation(
            id=_generate_id(),
            name=data.name,
            description=data.description,
            enabled=True,
            version=1,
            graph=data.graph,
            created_at=now,
            updated_at=now,
        )
        automation = await self._validated(draft)

        async with self._lock.write():
            await self.store.insert(automation)
            self._index[automation.id] = automation

        logger.info(f"Created automation {automation.id} ({automation.name})")
        return automation

    async def update(
        self, automation_id: str, expected_version: int, data: AutomationUpdate
    ) -> Automation:
        """Replace an automation's graph and metadata.

        Raises:
            AutomationNotFound: No automation has this id.
            VersionConflict: The stored version is not ``expected_version``.
            CompileError: The new graph could not be turned into a script.
            ScriptSyntaxError: The generated script failed sandbox validation.
        """
        async with self._lock.read():
            current = self._require(automation_id, expected_version)

        draft = current.model_copy(
            update={
                "name": data.name,
                "description": data.description,
                "graph": data.graph,
                "version": current.version + 1,
                "updated_at": _now(),
            }
        )
        automation = await self._validated(draft)

        async with self._lock.write():
            # Another writer may have committed while we were compiling
            latest = self._require(automation_id, expected_version)
            enabled = data.enabled if data.enabled is not None else latest.enabled
            automation = automation.model_copy(update={"enabled": enabled})

            await self.store.replace(automation)
            self._index[automation_id] = automation

        logger.info(f"Updated automation {automation_id} to version {automation.version}")
        return automation

    async def toggle(self, automation_id: str, enabled: bool) -> Automation:
        """Enable or disable an automation without recompiling it."""
        async with self._lock.write():
            current = self._index.get(automation_id)
            if current is None:
                raise AutomationNotFound(automation_id)

            automation = current.model_copy(update={"enabled": enabled, "updated_at": _now()})
            if not await self.store.set_enabled(automation_id, enabled, automation.updated_at):
                raise AutomationNotFound(automation_id)
            self._index[automation_id] = automation

        logger.info(f"{'Enabled' if enabled else 'Disabled'} automation {automation_id}")
        return automation

    async def delete(self, automation_id: str) -> bool:
        """Delete an automation and its script. Returns whether it existed."""
        async with self._lock.write():
            deleted = await self.store.delete(automation_id)
            existed = self._index.pop(automation_id, None) is not None

        if existed or deleted:
            logger.info(f"Deleted automation {automation_id}")
        return existed or deleted

    # ==================== Helpers ====================

    def _require(self, automation_id: str, expected_version: int) -> Automation:
        current = self._index.get(automation_id)
        if current is None:
            raise AutomationNotFound(automation_id)
        if current.version != expected_version:
            raise VersionConflict(automation_id, expected_version, current.version)
        return current

    async def _validated(self, draft: Automation) -> Automation:
        """Compile a draft's graph; annotate and re-raise on failure."""
        catalog = self._catalog
        try:
            script = await asyncio.to_thread(self._compile, draft.graph, catalog)
        except (CompileError, ScriptSyntaxError) as e:
            e.draft = draft.model_copy(
                update={"generated_script": None, "compilation_error": e.message}
            )
            logger.warning(f"Rejected automation {draft.id}: {e.message}")
            raise
        return draft.model_copy(update={"generated_script": script, "compilation_error": None})

    def _compile(self, graph: dict, catalog: BlockCatalog) -> str:
        script = self.compiler.generate(graph, catalog)
        self.runtime.compile(script)
        return script

