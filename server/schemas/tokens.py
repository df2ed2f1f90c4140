"""Token status schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TokenStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tokens_remaining: int = Field(alias="tokensRemaining")
    daily_cap: int = Field(alias="dailyCap")
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    monthly_used: int = Field(alias="monthlyUsed")
