"""Application entry point: logging setup and service wiring."""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from blockflow.catalog import BlockCatalog, load_catalog
from blockflow.codegen import GraphCompiler
from blockflow.config import (
    BLOCKS_PATH,
    BUILTIN_BLOCKS_DIR,
    DATABASE_PATH,
    GRAPH_MAX_DEPTH,
    LOG_LEVEL,
)
from blockflow.db import AutomationStore, close_database, init_database
from blockflow.sandbox import SandboxLimits, SandboxRuntime
from blockflow.services import AutomationRepository

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


def build_catalog(blocks_path: str | Path | None = None) -> BlockCatalog:
    """Built-in blocks, overridden by definitions from ``blocks_path``."""
    directories: list[str | Path] = [BUILTIN_BLOCKS_DIR]
    extra = blocks_path or BLOCKS_PATH
    if extra:
        directories.append(extra)

    catalog = load_catalog(*directories)
    logger.info(f"Loaded {len(catalog)} block types")
    return catalog


@asynccontextmanager
async def lifespan(
    db_path: str | None = None, blocks_path: str | Path | None = None
) -> AsyncGenerator[AutomationRepository, None]:
    """Open the database, load the catalog and index, and close on exit."""
    await init_database(db_path or DATABASE_PATH)
    try:
        repository = AutomationRepository(
            AutomationStore(),
            build_catalog(blocks_path),
            compiler=GraphCompiler(max_depth=GRAPH_MAX_DEPTH),
            runtime=SandboxRuntime(SandboxLimits.from_env()),
        )
        await repository.load()
        yield repository
    finally:
        await close_database()
