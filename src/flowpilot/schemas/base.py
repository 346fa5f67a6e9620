"""Shared schema base classes."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class StrictSchemaModel(BaseModel):
    """Base model with strict validation defaults."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True, frozen=False)


class LenientSchemaModel(BaseModel):
    """Base model for payloads produced by external processes and models."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

