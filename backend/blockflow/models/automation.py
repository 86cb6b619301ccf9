"""Pydantic models for Automation records."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


def _empty_workspace() -> dict[str, Any]:
    return {"blocks": []}


class AutomationCreate(BaseModel):
    """Request model for creating an automation."""

    name: str
    description: str | None = None
    graph: dict[str, Any] = Field(default_factory=_empty_workspace)


class AutomationUpdate(BaseModel):
    """Request model for replacing an automation's graph and metadata.

    ``enabled`` left as None keeps the stored flag.
    """

    name: str
    description: str | None = None
    enabled: bool | None = None
    graph: dict[str, Any] = Field(default_factory=_empty_workspace)


class Automation(BaseModel):
    """A stored automation: the authored graph paired with its generated script."""

    id: str
    name: str
    description: str | None = None
    enabled: bool = True
    version: int = Field(default=1, ge=1)
    graph: dict[str, Any] = Field(default_factory=_empty_workspace)
    generated_script: str | None = None
    compilation_error: str | None = None
    created_at: datetime
    updated_at: datetime
