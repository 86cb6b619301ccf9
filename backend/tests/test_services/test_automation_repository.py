"""Tests for AutomationRepository."""

import asyncio

import pytest

from blockflow.catalog import BlockCatalog
from blockflow.db import AutomationStore
from blockflow.errors import (
    AutomationNotFound,
    ScriptSyntaxError,
    UnknownBlockType,
    VersionConflict,
)
from blockflow.models import AutomationCreate, AutomationUpdate, BlockDefinition
from blockflow.services import AutomationRepository

from conftest import block, connect, workspace


def porch_graph(state: str = "on") -> dict:
    return workspace(
        block(
            "ha_state_trigger",
            fields={"ENTITY_ID": "binary_sensor.porch_motion"},
            statements={
                "DO": connect(
                    block("ha_set_state", fields={"ENTITY_ID": "light.porch", "STATE": state})
                )
            },
        )
    )


def mystery_graph() -> dict:
    return workspace(block("mystery"))


class TestCreate:
    """Tests for creating automations."""

    async def test_create_stores_script(self, repository):
        automation = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))

        assert automation.version == 1
        assert automation.enabled is True
        assert automation.compilation_error is None
        assert "set_state('light.porch', 'on')" in automation.generated_script

        stored = await repository.store.get(automation.id)
        assert stored.generated_script == automation.generated_script
        assert await repository.get(automation.id) == automation

    async def test_empty_graph(self, repository):
        automation = await repository.create(AutomationCreate(name="Empty"))
        assert automation.generated_script == ""

    async def test_unknown_block_rejected(self, repository):
        with pytest.raises(UnknownBlockType) as exc_info:
            await repository.create(AutomationCreate(name="Broken", graph=mystery_graph()))

        draft = exc_info.value.draft
        assert draft.name == "Broken"
        assert draft.generated_script is None
        assert "mystery" in draft.compilation_error

        assert await repository.list() == []
        assert await repository.store.list_all() == []

    async def test_invalid_script_rejected(self, repository):
        repository.set_catalog(
            repository.catalog.with_definition(
                BlockDefinition(type="evil", template="result = eval('1')")
            )
        )
        with pytest.raises(ScriptSyntaxError) as exc_info:
            await repository.create(AutomationCreate(name="Evil", graph=workspace(block("evil"))))

        assert exc_info.value.draft.compilation_error.startswith("Script compilation error")
        assert await repository.list() == []


class TestUpdate:
    """Tests for versioned updates."""

    async def test_update_bumps_version(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))

        updated = await repository.update(
            created.id, 1, AutomationUpdate(name="Porch v2", graph=porch_graph("off"))
        )

        assert updated.version == 2
        assert updated.name == "Porch v2"
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at
        assert "set_state('light.porch', 'off')" in updated.generated_script
        assert (await repository.store.get(created.id)).version == 2

    async def test_versions_strictly_increase(self, repository):
        automation = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))
        for expected in range(1, 4):
            automation = await repository.update(
                automation.id, expected, AutomationUpdate(name="Porch", graph=porch_graph())
            )
            assert automation.version == expected + 1

    async def test_stale_version_rejected(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))
        await repository.update(created.id, 1, AutomationUpdate(name="Porch v2", graph=porch_graph()))
        before = await repository.get(created.id)
        stored_before = await repository.store.get(created.id)

        with pytest.raises(VersionConflict) as exc_info:
            await repository.update(
                created.id, 1, AutomationUpdate(name="Stale", graph=porch_graph("off"))
            )

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert await repository.get(created.id) == before
        assert await repository.store.get(created.id) == stored_before
        assert before.version == 2
        assert before.name == "Porch v2"

    async def test_missing_automation(self, repository):
        with pytest.raises(AutomationNotFound):
            await repository.update("nope", 1, AutomationUpdate(name="x"))

    async def test_failed_compile_leaves_record(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))

        with pytest.raises(UnknownBlockType) as exc_info:
            await repository.update(created.id, 1, AutomationUpdate(name="x", graph=mystery_graph()))

        assert exc_info.value.draft.version == 2
        assert await repository.get(created.id) == created
        assert (await repository.store.get(created.id)).version == 1

    async def test_enabled_kept_unless_given(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))
        await repository.toggle(created.id, False)

        kept = await repository.update(created.id, 1, AutomationUpdate(name="Porch"))
        assert kept.enabled is False

        changed = await repository.update(created.id, 2, AutomationUpdate(name="Porch", enabled=True))
        assert changed.enabled is True

    async def test_concurrent_updates_one_wins(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))

        results = await asyncio.gather(
            *[
                repository.update(created.id, 1, AutomationUpdate(name=f"Writer {n}", graph=porch_graph()))
                for n in range(5)
            ],
            return_exceptions=True,
        )

        winners = [result for result in results if not isinstance(result, Exception)]
        conflicts = [result for result in results if isinstance(result, VersionConflict)]
        assert len(winners) == 1
        assert len(conflicts) == 4
        assert (await repository.get(created.id)).name == winners[0].name
        assert (await repository.get(created.id)).version == 2


class TestToggleAndDelete:
    """Tests for toggling and deleting automations."""

    async def test_toggle_does_not_recompile(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))

        # Catalog without the trigger block: a recompile would fail
        repository.set_catalog(repository.catalog.without("ha_state_trigger"))
        toggled = await repository.toggle(created.id, False)

        assert toggled.enabled is False
        assert toggled.version == 1
        assert toggled.generated_script == created.generated_script
        assert (await repository.store.get(created.id)).enabled is False

    async def test_toggle_missing(self, repository):
        with pytest.raises(AutomationNotFound):
            await repository.toggle("nope", True)

    async def test_delete(self, repository):
        created = await repository.create(AutomationCreate(name="Porch", graph=porch_graph()))

        assert await repository.delete(created.id) is True
        assert await repository.get(created.id) is None
        assert await repository.store.get(created.id) is None
        assert await repository.delete(created.id) is False


class TestLoad:
    """Tests for rebuilding the index."""

    async def test_load_from_store(self, repository, builtin_catalog):
        first = await repository.create(AutomationCreate(name="First", graph=porch_graph()))
        second = await repository.create(AutomationCreate(name="Second", graph=porch_graph("off")))

        fresh = AutomationRepository(AutomationStore(), builtin_catalog)
        assert await fresh.load() == 2
        assert [automation.id for automation in await fresh.list()] == [second.id, first.id]
        assert (await fresh.get(first.id)).generated_script == first.generated_script

    async def test_new_catalog_used_for_later_compiles(self, repository):
        repository.set_catalog(
            BlockCatalog([BlockDefinition(type="mystery", template="result = 'solved'")])
        )
        automation = await repository.create(AutomationCreate(name="Now known", graph=mystery_graph()))
        assert automation.generated_script == "result = 'solved'"
