"""Pydantic models for blockflow."""

from blockflow.models.automation import Automation, AutomationCreate, AutomationUpdate
from blockflow.models.block import (
    BlockArgument,
    BlockDefinition,
    BlockGraph,
    BlockNode,
    BlockTemplateSchema,
)

__all__ = [
    # Block graphs
    "BlockNode",
    "BlockGraph",
    # Block definitions
    "BlockArgument",
    "BlockDefinition",
    "BlockTemplateSchema",
    # Automations
    "Automation",
    "AutomationCreate",
    "AutomationUpdate",
]
