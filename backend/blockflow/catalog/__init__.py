"""Block catalog: definitions, template schemas and directory loading."""

from blockflow.catalog.block_catalog import BlockCatalog
from blockflow.catalog.loader import (
    delete_definition,
    load_catalog,
    load_definitions,
    save_definition,
)

__all__ = [
    "BlockCatalog",
    "load_catalog",
    "load_definitions",
    "save_definition",
    "delete_definition",
]
