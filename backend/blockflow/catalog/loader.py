"""Load block definitions from directories.

Two kinds of files are recognised, searched recursively:

- ``*.yaml`` / ``*.yml``: a full block definition (Blockly JSON keys plus a
  ``template`` key holding the Jinja2 script template).
- ``*.j2``: a bare template; the file stem is the block type and the block
  declares no parameters.

When both exist for one type, the YAML definition wins. Later directories
override earlier ones.
"""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from blockflow.catalog.block_catalog import BlockCatalog
from blockflow.codegen.template import validate_template
from blockflow.models import BlockDefinition

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = {".yaml", ".yml"}
TEMPLATE_SUFFIX = ".j2"


def load_definitions(directory: str | Path) -> list[BlockDefinition]:
    """Read every block definition under a directory.

    Unreadable or invalid files are logged and skipped so one bad block does
    not take the whole catalog down.
    """
    root = Path(directory)
    if not root.is_dir():
        logger.warning(f"Block directory does not exist: {root}")
        return []

    definitions: dict[str, BlockDefinition] = {}
    templates: dict[str, BlockDefinition] = {}

    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue

        suffix = path.suffix.lower()
        if suffix == TEMPLATE_SUFFIX:
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to read {path}: {e}")
                continue
            templates[path.stem] = BlockDefinition(type=path.stem, template=content)
            logger.info(f"Loaded built-in template: {path.stem} from {path}")

        elif suffix in DEFINITION_SUFFIXES:
            definition = _read_definition(path)
            if definition is not None:
                definitions[definition.type] = definition
                logger.info(f"Loaded block: {definition.type} from {path}")

    return [*templates.values(), *definitions.values()]


def _read_definition(path: Path) -> BlockDefinition | None:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to read {path}: {e}")
        return None

    try:
        definition = BlockDefinition.model_validate(data)
    except ValidationError as e:
        logger.error(f"Failed to parse block from {path}: {e}")
        return None

    if definition.template is not None:
        for problem in validate_template(definition.template):
            logger.warning(f"Block {definition.type} template: {problem}")
    return definition


def load_catalog(*directories: str | Path) -> BlockCatalog:
    """Build a catalog snapshot from one or more block directories."""
    merged: dict[str, BlockDefinition] = {}
    for directory in directories:
        for definition in load_definitions(directory):
            merged[definition.type] = definition
    return BlockCatalog(merged.values())


def definition_path(directory: str | Path, definition: BlockDefinition) -> Path:
    """Where a user-defined block is stored: ``<directory>/<category>/<type>.yaml``."""
    category = (definition.category or "custom").lower()
    return Path(directory) / category / f"{definition.type}.yaml"


def save_definition(directory: str | Path, definition: BlockDefinition) -> Path:
    """Write a block definition as YAML, replacing any earlier file for the type."""
    path = definition_path(directory, definition)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = definition.model_dump(by_alias=True, exclude_none=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
    logger.info(f"Saved block: {definition.type} to {path}")
    return path


def delete_definition(directory: str | Path, definition: BlockDefinition) -> bool:
    """Remove a block's YAML file. Returns whether a file was removed."""
    path = definition_path(directory, definition)
    if not path.exists():
        return False
    path.unlink()
    logger.info(f"Deleted block: {definition.type} from {path}")
    return True
