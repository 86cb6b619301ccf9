"""Pydantic models for block graphs and block definitions."""

from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from blockflow.config import GRAPH_MAX_DEPTH
from blockflow.errors import CycleDetected, StructuralError


def _check_value(value: Any, path: str) -> None:
    """Ensure a field/mutation value is a string, number, boolean or nested map."""
    if isinstance(value, (str, bool, int, float)):
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: map keys must be strings")
            _check_value(item, f"{path}.{key}")
        return
    raise ValueError(f"{path}: unsupported value type '{type(value).__name__}'")


class BlockNode(BaseModel):
    """One visual instruction in a block graph.

    ``statement_inputs`` point at the head of a chain that continues through
    each block's ``next``.
    """

    type: str
    id: str | None = None
    field_values: dict[str, Any] = Field(default_factory=dict, alias="fields")
    value_inputs: dict[str, "BlockNode"] = Field(default_factory=dict, alias="valueInputs")
    statement_inputs: dict[str, "BlockNode"] = Field(
        default_factory=dict, alias="statementInputs"
    )
    mutation: dict[str, Any] = Field(default_factory=dict)
    next: "BlockNode | None" = None

    model_config = {"populate_by_name": True}

    @field_validator("field_values", "mutation")
    @classmethod
    def _closed_values(cls, value: dict[str, Any]) -> dict[str, Any]:
        for key, item in value.items():
            _check_value(item, key)
        return value


BlockNode.model_rebuild()


class BlockGraph(BaseModel):
    """Ordered top-level roots of a workspace. Only the first root is compiled."""

    blocks: list[BlockNode] = Field(default_factory=list)

    @classmethod
    def from_workspace(cls, workspace: Any, max_depth: int = GRAPH_MAX_DEPTH) -> "BlockGraph":
        """Build a graph from Blockly workspace JSON.

        Accepts ``{"blocks": [...]}`` (or ``{"nodes": [...]}``), Blockly's
        serializer shape ``{"blocks": {"languageVersion": 0, "blocks": [...]}}``,
        a bare list of blocks, or an existing BlockGraph.

        Raises:
            StructuralError: If the workspace does not hold a list of blocks
                or any block inside it is malformed.
            CycleDetected: If a block object contains itself or nesting
                exceeds ``max_depth``.
        """
        if isinstance(workspace, BlockGraph):
            return workspace

        blocks = workspace
        if isinstance(workspace, dict):
            blocks = workspace.get("blocks", workspace.get("nodes"))
            if isinstance(blocks, dict):
                blocks = blocks.get("blocks")

        if not isinstance(blocks, list):
            raise StructuralError("No blocks found in workspace")

        return cls(
            blocks=[
                _parse_block(block, f"blocks[{i}]", set(), max_depth)
                for i, block in enumerate(blocks)
            ]
        )


def _parse_block(data: Any, location: str, active: set[int], max_depth: int) -> BlockNode:
    """Convert one Blockly block object into a BlockNode.

    ``active`` holds the ids of the block objects on the current path.
    """
    if isinstance(data, BlockNode):
        return data
    if not isinstance(data, dict):
        raise StructuralError(f"{location}: block must be an object")
    if id(data) in active:
        raise CycleDetected(f"{location}: block contains itself", node_type=data.get("type"))
    if len(active) >= max_depth:
        raise CycleDetected(f"{location}: blocks nest deeper than {max_depth} levels")

    active.add(id(data))
    try:
        return _build_node(data, location, active, max_depth)
    finally:
        active.discard(id(data))


def _build_node(
    data: dict[str, Any], location: str, active: set[int], max_depth: int
) -> BlockNode:
    block_type = data.get("type")
    if not isinstance(block_type, str) or not block_type:
        raise StructuralError(f"{location}: Block type not found")

    fields = _object(data.get("fields"), f"{location}.fields", block_type)
    inputs = _object(data.get("inputs", data.get("valueInputs")), f"{location}.inputs", block_type)
    statements = _object(
        data.get("statements", data.get("statementInputs")), f"{location}.statements", block_type
    )
    mutation = {
        **_object(data.get("extraState"), f"{location}.extraState", block_type),
        **_object(data.get("mutation"), f"{location}.mutation", block_type),
    }

    next_entry = data.get("next")
    next_block = None
    if next_entry is not None:
        next_block = _parse_input(
            next_entry, "next", f"{location}.next", block_type, active, max_depth
        )

    try:
        return BlockNode(
            type=block_type,
            id=data.get("id") if isinstance(data.get("id"), str) else None,
            fields={key: _field_value(value) for key, value in fields.items()},
            valueInputs={
                key: _parse_input(
                    entry, key, f"{location}.inputs.{key}", block_type, active, max_depth
                )
                for key, entry in inputs.items()
            },
            statementInputs={
                key: _parse_input(
                    entry, key, f"{location}.statements.{key}", block_type, active, max_depth
                )
                for key, entry in statements.items()
            },
            mutation=mutation,
            next=next_block,
        )
    except ValidationError as e:
        first = e.errors()[0]
        raise StructuralError(f"{location}: {first['msg']}", node_type=block_type) from e


def _parse_input(
    entry: Any, key: str, location: str, node_type: str, active: set[int], max_depth: int
) -> BlockNode:
    """Resolve an input connection (``{"block": {...}}``) to its node.

    Shadow blocks are used when no real block is plugged in. A block object
    given directly in place of the connection is accepted as well.
    """
    if isinstance(entry, BlockNode):
        return entry
    if isinstance(entry, dict):
        if "type" in entry:
            return _parse_block(entry, location, active, max_depth)
        block = entry.get("block") or entry.get("shadow")
        if isinstance(block, dict):
            return _parse_block(block, location, active, max_depth)
    raise StructuralError(
        f"Malformed input '{key}' at {location}: expected a connected block",
        key=key,
        node_type=node_type,
    )


def _object(value: Any, location: str, node_type: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise StructuralError(f"{location}: expected an object", node_type=node_type)
    return value


def _field_value(value: Any) -> Any:
    # Blockly field entries may be wrapped as {"value": ...}
    if isinstance(value, dict) and set(value) == {"value"}:
        return value["value"]
    return value


class BlockArgument(BaseModel):
    """An argument slot (field or input) declared by a block definition."""

    type: str
    name: str | None = None
    check: str | list[str] | None = None
    options: list[list[str]] | None = None
    default: str | None = None

    model_config = {"extra": "allow"}


class BlockTemplateSchema(BaseModel):
    """What the compiler needs to know about a block type."""

    type: str
    declared_params: frozenset[str] = frozenset()
    template: str | None = None

    model_config = {"frozen": True}


class BlockDefinition(BaseModel):
    """A Blockly block definition extended with its script template."""

    type: str
    message0: str = ""
    args0: list[BlockArgument] = Field(default_factory=list)
    message1: str | None = None
    args1: list[BlockArgument] = Field(default_factory=list)
    output: str | None = None
    previous_statement: bool | str | None = Field(default=None, alias="previousStatement")
    next_statement: bool | str | None = Field(default=None, alias="nextStatement")
    colour: int | str = 0
    tooltip: str = ""
    help_url: str | None = Field(default=None, alias="helpUrl")
    category: str | None = None
    template: str | None = None

    model_config = {"populate_by_name": True, "extra": "allow"}

    def declared_params(self) -> frozenset[str]:
        """Names of every argument across all message lines."""
        return frozenset(arg.name for arg in [*self.args0, *self.args1] if arg.name)

    def to_schema(self) -> BlockTemplateSchema:
        return BlockTemplateSchema(
            type=self.type,
            declared_params=self.declared_params(),
            template=self.template,
        )
