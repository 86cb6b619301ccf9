"""GraphCompiler - turns a block graph into script text.

Each node is rendered by its block type's Jinja2 template. Inputs are
rendered first (depth-first) and their text is bound into the parent's
template under the input's key, so the whole script is assembled bottom-up
by plain textual substitution.

Bindings available to a template:

- every parameter the block declares, defaulting to ``""``
- literal field values
- rendered value inputs and statement inputs, under their keys
- ``hasElse``: whether an ``ELSE`` statement input is present
- ``elseif``: ``[{"IF": ..., "DO": ...}]`` for ``IF1/DO1``, ``IF2/DO2``, ...,
  sized by the ``elseIfCount`` mutation when present
- ``mutation_<key>`` for every mutation entry
- ``NEXT``: the rendered next block chain, ``""`` when there is none

The compiler never appends ``NEXT`` itself. A statement block's template
must place ``{{ NEXT }}`` where the following blocks belong; a node that
has a next block but whose template never mentions ``NEXT`` is rejected.
"""

import logging
import re
from typing import Any

from jinja2 import Template, TemplateError, meta

from blockflow.catalog.block_catalog import BlockCatalog
from blockflow.codegen.template import create_template_environment
from blockflow.config import GRAPH_MAX_DEPTH
from blockflow.errors import (
    CycleDetected,
    MissingTemplate,
    StructuralError,
    TemplateRenderError,
    UnknownBlockType,
)
from blockflow.models import BlockGraph, BlockNode

logger = logging.getLogger(__name__)

NEXT_KEY = "NEXT"
ELSE_KEY = "ELSE"
MUTATION_PREFIX = "mutation_"

ARM_KEY = re.compile(r"(?:IF|DO)(\d+)")
# extraState (JSON) and mutation attribute (XML) spellings of the arm count
ELSE_IF_COUNT_KEYS = ("elseIfCount", "elseif")
MAX_ELSE_IF_ARMS = 256


class GraphCompiler:
    """Compiles block graphs against a catalog snapshot.

    The compiler holds no graph or catalog state between calls: the same
    graph and catalog always give the same text. Parsed templates are cached
    by their source text.

    Example:
        compiler = GraphCompiler()
        script = compiler.generate({"blocks": [...]}, catalog)
    """

    def __init__(self, max_depth: int = GRAPH_MAX_DEPTH):
        """Initialize the compiler.

        Args:
            max_depth: Deepest nesting (inputs plus next chains) accepted
                before the graph is rejected.
        """
        self.max_depth = max_depth
        self._env = create_template_environment()
        self._templates: dict[str, tuple[Template, frozenset[str]]] = {}

    def generate(self, graph: Any, catalog: BlockCatalog) -> str:
        """Generate the script for a graph.

        Args:
            graph: A BlockGraph, a list of nodes, or Blockly workspace JSON.
            catalog: The block catalog snapshot to resolve types against.

        Returns:
            The script text; ``""`` for an empty workspace.

        Raises:
            CompileError: Any structural, lookup, cycle or template failure.
                Nothing is returned for a partially rendered graph.
        """
        roots = BlockGraph.from_workspace(graph, self.max_depth).blocks
        if not roots:
            return ""

        # Only the first top-level block is compiled
        return self._render_node(roots[0], catalog, set(), 1)

    def _render_node(
        self,
        node: BlockNode,
        catalog: BlockCatalog,
        path: set[int],
        depth: int,
    ) -> str:
        """Render one node, recursing into its inputs and next chain."""
        if id(node) in path:
            raise CycleDetected(
                f"Block '{node.type}' is reachable from itself", node_type=node.type
            )
        if depth > self.max_depth:
            raise CycleDetected(
                f"Block graph nests deeper than {self.max_depth} levels at '{node.type}'",
                node_type=node.type,
            )

        schema = catalog.get(node.type)
        if schema is None:
            raise UnknownBlockType(node.type)
        if schema.template is None:
            raise MissingTemplate(node.type)

        path.add(id(node))
        try:
            bindings = self._bind(node, schema.declared_params, catalog, path, depth)
        finally:
            path.discard(id(node))

        return self._render_template(node, schema.template, bindings)

    def _bind(
        self,
        node: BlockNode,
        declared_params: frozenset[str],
        catalog: BlockCatalog,
        path: set[int],
        depth: int,
    ) -> dict[str, Any]:
        """Build the template bindings for a node."""
        bindings: dict[str, Any] = {param: "" for param in declared_params}
        bindings[NEXT_KEY] = ""

        bindings.update(node.field_values)

        for key, child in node.value_inputs.items():
            bindings[key] = self._render_node(child, catalog, path, depth + 1)

        for key, head in node.statement_inputs.items():
            bindings[key] = self._render_node(head, catalog, path, depth + 1)

        bindings["hasElse"] = ELSE_KEY in node.statement_inputs
        bindings["elseif"] = self._else_if_arms(node, bindings)

        for key, value in node.mutation.items():
            bindings[f"{MUTATION_PREFIX}{key}"] = value

        if node.next is not None:
            bindings[NEXT_KEY] = self._render_node(node.next, catalog, path, depth + 1)

        return bindings

    def _else_if_arms(self, node: BlockNode, bindings: dict[str, Any]) -> list[dict[str, str]]:
        """Collect IF1/DO1, IF2/DO2, ... into a list.

        Blockly leaves empty inputs out of its JSON, so the arm count comes from
        the block's mutation when it has one and otherwise from the highest arm
        index present. Missing arms bind ``""``.
        """
        count = self._else_if_count(node)
        for key in [*node.value_inputs, *node.statement_inputs]:
            match = ARM_KEY.fullmatch(key)
            if match:
                count = max(count, int(match.group(1)))

        if count > MAX_ELSE_IF_ARMS:
            raise StructuralError(
                f"Block '{node.type}' has {count} else-if arms, more than {MAX_ELSE_IF_ARMS}",
                node_type=node.type,
            )
        return [
            {"IF": bindings.get(f"IF{n}", ""), "DO": bindings.get(f"DO{n}", "")}
            for n in range(1, count + 1)
        ]

    def _else_if_count(self, node: BlockNode) -> int:
        for key in ELSE_IF_COUNT_KEYS:
            if key not in node.mutation:
                continue
            value = node.mutation[key]
            if isinstance(value, str) and value.isdigit():
                value = int(value)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise StructuralError(
                    f"Block '{node.type}' has an invalid {key} mutation: {value!r}",
                    key=key,
                    node_type=node.type,
                )
            return value
        return 0

    def _render_template(self, node: BlockNode, source: str, bindings: dict[str, Any]) -> str:
        template, referenced = self._load_template(node.type, source)

        if node.next is not None and NEXT_KEY not in referenced:
            raise TemplateRenderError(
                node.type,
                f"block has a next block but its template never places {{{{ {NEXT_KEY} }}}}",
            )

        try:
            return template.render(bindings)
        except TemplateError as e:
            raise TemplateRenderError(node.type, e.message or str(e)) from e
        except (TypeError, ValueError, ArithmeticError) as e:
            raise TemplateRenderError(node.type, str(e)) from e

    def _load_template(self, node_type: str, source: str) -> tuple[Template, frozenset[str]]:
        """Parse a template once and remember which names it references."""
        cached = self._templates.get(source)
        if cached is not None:
            return cached

        try:
            ast = self._env.parse(source)
            referenced = frozenset(meta.find_undeclared_variables(ast))
            template = self._env.from_string(source)
        except TemplateError as e:
            raise TemplateRenderError(node_type, e.message or str(e)) from e

        self._templates[source] = (template, referenced)
        logger.debug(f"Cached template for block type '{node_type}'")
        return template, referenced
