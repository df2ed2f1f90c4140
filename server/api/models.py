"""Models API — the chat model catalog."""

from __future__ import annotations

from fastapi import APIRouter

from schemas.model import ModelOut
from services.providers import list_models

router = APIRouter()


@router.get("/", response_model=list[ModelOut])
def list_available_models(include_legacy: bool = False):
    return [
        ModelOut(
            id=m.id,
            display_name=m.display_name,
            provider=m.provider.value,
            capabilities=sorted(c.value for c in m.capabilities),
            multiplier=m.multiplier,
            legacy=m.legacy,
        )
        for m in list_models(include_legacy=include_legacy)
    ]
