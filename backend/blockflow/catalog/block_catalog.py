"""Immutable lookup from block type to template schema."""

from __future__ import annotations

from collections.abc import Iterable
from types import MappingProxyType

from blockflow.models import BlockDefinition, BlockTemplateSchema


class BlockCatalog:
    """A read-only snapshot of block definitions.

    Compilation takes a catalog explicitly, so a compile always sees one
    consistent set of templates. Changing the catalog means building a new
    snapshot with ``with_definition`` / ``without``.

    Example:
        catalog = BlockCatalog([BlockDefinition(type="text", template="{{ TEXT }}")])
        schema = catalog.get("text")
    """

    def __init__(self, definitions: Iterable[BlockDefinition] = ()):
        by_type = {definition.type: definition for definition in definitions}
        self._definitions = MappingProxyType(by_type)
        self._schemas = MappingProxyType(
            {block_type: definition.to_schema() for block_type, definition in by_type.items()}
        )

    def get(self, block_type: str) -> BlockTemplateSchema | None:
        """Get the schema for a block type, or None if it is unknown."""
        return self._schemas.get(block_type)

    def list(self) -> list[BlockTemplateSchema]:
        """All schemas, ordered by block type."""
        return [self._schemas[block_type] for block_type in sorted(self._schemas)]

    def definitions(self) -> list[BlockDefinition]:
        """All full block definitions, ordered by block type."""
        return [self._definitions[block_type] for block_type in sorted(self._definitions)]

    def with_definition(self, definition: BlockDefinition) -> "BlockCatalog":
        """Return a new catalog with the definition added or replaced."""
        return BlockCatalog([*self._definitions.values(), definition])

    def without(self, block_type: str) -> "BlockCatalog":
        """Return a new catalog with the block type removed."""
        return BlockCatalog(
            definition for definition in self._definitions.values() if definition.type != block_type
        )

    def __contains__(self, block_type: object) -> bool:
        return block_type in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)
