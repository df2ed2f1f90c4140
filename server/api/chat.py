"""Chat API — blocking and streaming completions, alternate responses."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from auth import get_current_user, get_external_id
from database import get_db
from logging_config import user_id_var
from models.user import UserProfile
from schemas.chat import (
    AddResponseRequest,
    ChatRequest,
    ChatResponse,
    MessageResponseOut,
    SwitchResponseRequest,
)
from services import conversations
from services.chat import ChatDispatcher
from services.providers import get_model

logger = logging.getLogger(__name__)

router = APIRouter()


def get_dispatcher(request: Request, db: Session = Depends(get_db)) -> ChatDispatcher:
    cache = getattr(request.app.state, "response_cache", None)
    return ChatDispatcher(db, cache=cache)


def _sse(event: dict | str) -> str:
    payload = event if isinstance(event, str) else json.dumps(event, ensure_ascii=False)
    return f"data: {payload}\n\n"


async def _event_stream(events: AsyncIterator[dict]) -> AsyncIterator[str]:
    try:
        async for event in events:
            yield _sse(event)
        yield _sse("[DONE]")
    finally:
        await events.aclose()


def _response_out(response) -> MessageResponseOut:
    descriptor = get_model(response.model)
    return MessageResponseOut(
        id=response.id,
        message_id=response.message_id,
        model=response.model,
        display_name=descriptor.display_name if descriptor else None,
        content=response.content,
        tokens_used=response.tokens_used,
        is_primary=response.is_primary,
        created_at=response.created_at,
    )


@router.post("/", response_model=ChatResponse)
async def chat(
    payload: ChatRequest,
    external_id: str = Depends(get_external_id),
    dispatcher: ChatDispatcher = Depends(get_dispatcher),
):
    """Send a conversation to the selected model.

    Returns a ``ChatResponse``, or a ``text/event-stream`` when ``stream`` is set.
    Quota and validation errors are returned as JSON before any stream opens.
    A blocking request consults the response cache before the quota gate.
    """
    prepared = await run_in_threadpool(dispatcher.prepare, payload, external_id)
    user_id_var.set(str(prepared.user.id))

    if payload.stream:
        await run_in_threadpool(dispatcher.check_quota, prepared)
        return StreamingResponse(
            _event_stream(dispatcher.stream(prepared)),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )
    return await dispatcher.complete(prepared)


@router.post("/add-response/", response_model=MessageResponseOut, status_code=201)
async def add_response(
    payload: AddResponseRequest,
    external_id: str = Depends(get_external_id),
    dispatcher: ChatDispatcher = Depends(get_dispatcher),
):
    prepared = await run_in_threadpool(dispatcher.prepare, payload, external_id)
    user_id_var.set(str(prepared.user.id))
    response = await dispatcher.add_response(payload.message_id, prepared)
    return _response_out(response)


@router.post("/switch-response/", response_model=MessageResponseOut)
def switch_response(
    payload: SwitchResponseRequest,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    message = conversations.get_owned_message(db, payload.message_id, user.id)
    chosen = conversations.switch_primary_response(db, message.id, payload.response_id)
    logger.info("Message %s now shows response %s", message.id, chosen.id)
    return _response_out(chosen)


@router.get("/responses/{message_id}")
def list_responses(
    message_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    message = conversations.get_owned_message(db, message_id, user.id)
    items = [_response_out(r) for r in conversations.list_responses(db, message.id)]
    return {"items": items, "total": len(items)}
