"""Pytest configuration and fixtures."""

from typing import Any

import pytest

from blockflow.catalog import BlockCatalog, load_catalog
from blockflow.codegen import GraphCompiler
from blockflow.config import BUILTIN_BLOCKS_DIR
from blockflow.db import AutomationStore, close_database, init_database
from blockflow.models import BlockDefinition
from blockflow.sandbox import SandboxLimits, SandboxRuntime
from blockflow.services import AutomationRepository


def block(block_type: str, **parts: Any) -> dict[str, Any]:
    """Build a Blockly block object.

    Keyword arguments become top-level keys, so ``fields``, ``inputs``,
    ``statements``, ``next`` and ``extraState`` can be given directly.
    """
    return {"type": block_type, **parts}


def connect(child: dict[str, Any]) -> dict[str, Any]:
    """Wrap a block as a Blockly input connection."""
    return {"block": child}


def workspace(*roots: dict[str, Any]) -> dict[str, Any]:
    """Wrap blocks in Blockly's workspace serialization shape."""
    return {"blocks": {"languageVersion": 0, "blocks": list(roots)}}


@pytest.fixture
async def db(tmp_path):
    """Set up a temporary database for a test."""
    await init_database(str(tmp_path / "automations.db"))
    yield
    await close_database()


@pytest.fixture
def builtin_catalog() -> BlockCatalog:
    """Catalog of the blocks shipped with the package."""
    return load_catalog(BUILTIN_BLOCKS_DIR)


@pytest.fixture
def toy_catalog() -> BlockCatalog:
    """Minimal catalog with plain-text templates."""
    return BlockCatalog(
        [
            BlockDefinition(
                type="AND_OR",
                args0=[{"type": "field_dropdown", "name": "OP"}],
                template="{{OP}};",
            ),
            BlockDefinition(
                type="IF",
                args0=[
                    {"type": "input_value", "name": "IF0"},
                    {"type": "input_statement", "name": "DO0"},
                ],
                template="if {{IF0}} { {{DO0}} }",
            ),
            BlockDefinition(type="word", template="{{ WORD }}"),
            BlockDefinition(type="step", template="{{ NAME }}\n{{ NEXT }}"),
        ]
    )


@pytest.fixture
def limits() -> SandboxLimits:
    """Default limits without a wall-clock deadline, so step counts are exact."""
    return SandboxLimits(timeout_ms=0)


@pytest.fixture
def runtime(limits) -> SandboxRuntime:
    return SandboxRuntime(limits)


@pytest.fixture
async def repository(db, builtin_catalog, runtime) -> AutomationRepository:
    """Repository over the temporary database and the built-in blocks."""
    repo = AutomationRepository(
        AutomationStore(), builtin_catalog, compiler=GraphCompiler(), runtime=runtime
    )
    await repo.load()
    return repo
