"""Block graph to script code generation."""

from blockflow.codegen.generator import GraphCompiler
from blockflow.codegen.template import (
    create_template_environment,
    safe_identifier,
    validate_template,
)

__all__ = [
    "GraphCompiler",
    "create_template_environment",
    "safe_identifier",
    "validate_template",
]
