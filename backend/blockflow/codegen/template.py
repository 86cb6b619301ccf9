"""Jinja2 environment for block templates.

Block templates are user-authored, so they render in Jinja's sandboxed
environment with strict undefined handling: referencing a placeholder that
is neither declared by the block nor bound for the node is an error rather
than an empty string. Repetition, powers and padding are checked so a
template cannot build a huge value while rendering.
"""

import functools
import re
from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

MAX_IDENTIFIER_LENGTH = 50

# Longest string or sequence a template may build while rendering
MAX_RENDERED_LENGTH = 1_000_000

WIDTH_METHODS = frozenset({"ljust", "rjust", "center", "zfill"})


def _check_length(length: int) -> None:
    if length > MAX_RENDERED_LENGTH:
        raise SecurityError(
            f"template value of length {length} exceeds the limit of {MAX_RENDERED_LENGTH}"
        )


def _width_checked(filter_fn, default_width: int):
    """Wrap a padding filter so its width is checked before the string is built."""

    @functools.wraps(filter_fn)
    def checked(value, width=default_width, *args, **kwargs):
        if isinstance(width, int):
            text = str(value)
            _check_length(len(text) + width * (text.count("\n") + 1))
        return filter_fn(value, width, *args, **kwargs)

    return checked


class BlockTemplateEnvironment(SandboxedEnvironment):
    """Sandboxed environment that also bounds the size of values it builds."""

    intercepted_binops = frozenset({"*", "**"})

    def call_binop(self, context, operator: str, left: Any, right: Any) -> Any:
        if operator == "*":
            for seq, count in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    _check_length(len(seq) * count)
        elif operator == "**" and isinstance(left, int) and isinstance(right, int):
            if right > 0 and abs(left) > 1:
                _check_length(left.bit_length() * right)
        return super().call_binop(context, operator, left, right)

    def call(self, context, obj: Any, /, *args: Any, **kwargs: Any) -> Any:
        owner = getattr(obj, "__self__", None)
        if isinstance(owner, str) and getattr(obj, "__name__", None) in WIDTH_METHODS:
            if args and isinstance(args[0], int):
                _check_length(args[0])
        return super().call(context, obj, *args, **kwargs)


def safe_identifier(value: Any) -> str:
    """Turn any value into a valid script identifier.

    Examples:
        "light.living_room" -> "light_living_room"
        "2nd floor" -> "x2nd_floor"
    """
    name = re.sub(r"[^a-zA-Z0-9_]", "_", str(value)).strip("_")
    if not name:
        return "block"
    if name[0].isdigit():
        name = "x" + name
    return name[:MAX_IDENTIFIER_LENGTH]


def create_template_environment() -> BlockTemplateEnvironment:
    """Create the environment used to render every block template."""
    env = BlockTemplateEnvironment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    # Emit a value as a script literal ('on', 42, True)
    env.filters["literal"] = repr
    env.filters["identifier"] = safe_identifier
    env.filters["center"] = _width_checked(env.filters["center"], 80)
    env.filters["indent"] = _width_checked(env.filters["indent"], 4)
    return env


def validate_template(source: str, env: SandboxedEnvironment | None = None) -> list[str]:
    """Check a template before it is stored in a block definition.

    Returns:
        A list of problems; empty when the template is usable.
    """
    env = env or create_template_environment()
    problems = []

    if "{{" not in source and "{%" not in source:
        problems.append("Template must contain at least one variable")

    try:
        env.parse(source)
    except TemplateSyntaxError as e:
        problems.append(f"Line {e.lineno}: {e.message}")

    return problems
