"""Model catalog schema."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ModelOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: str = Field(alias="displayName")
    provider: str
    capabilities: list[str]
    multiplier: float
    legacy: bool = False
