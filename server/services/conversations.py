"""Conversation store: threads, messages, and alternate model responses.

``save_exchange`` is the write path the dispatcher uses after a completion.
It tolerates clients that already wrote the user message and an empty
assistant placeholder before streaming started; those rows are reused
rather than duplicated. Failures there are logged and degrade to an empty
id set, because the chat response has already been shown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from database import upsert_insert, utcnow
from models.conversation import PLACEHOLDER_TITLE, Message, MessageResponse, Thread
from services.errors import ChatError, ErrorKind

logger = logging.getLogger(__name__)

RECENT_MESSAGE_WINDOW = 10
PLACEHOLDER_MAX_CHARS = 3
TITLE_MAX_LENGTH = 40
FALLBACK_TITLE = "New Conversation"

_TITLE_PREFIXES = (
    "can you",
    "could you",
    "would you",
    "please",
    "how do i",
    "how can i",
    "help me",
    "i want to",
    "i need to",
)


@dataclass
class SavedExchange:
    user_message_id: str | None = None
    assistant_message_id: str | None = None


# ── Threads ───────────────────────────────────────────────────────────────────

def find_thread(db: Session, thread_id: str) -> Thread | None:
    return db.query(Thread).filter(Thread.id == thread_id).first()


def get_owned_thread(db: Session, thread_id: str, user_id: int) -> Thread:
    thread = find_thread(db, thread_id)
    if thread is None or thread.user_profile_id != user_id:
        raise ChatError(ErrorKind.NOT_FOUND, "Thread not found.")
    return thread


def ensure_thread(db: Session, thread_id: str, owner_id: int) -> Thread:
    """Create the thread if absent; concurrent creators resolve on the primary key."""
    stmt = (
        upsert_insert(db, Thread)
        .values(id=thread_id, user_profile_id=owner_id, title=PLACEHOLDER_TITLE)
        .on_conflict_do_nothing(index_elements=["id"])
    )
    db.execute(stmt)
    db.commit()
    return get_owned_thread(db, thread_id, owner_id)


def list_threads(db: Session, user_id: int, limit: int = 50, offset: int = 0) -> list[Thread]:
    return (
        db.query(Thread)
        .filter(Thread.user_profile_id == user_id)
        .order_by(Thread.updated_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def delete_thread(db: Session, thread_id: str, user_id: int) -> None:
    thread = get_owned_thread(db, thread_id, user_id)
    message_ids = select(Message.id).where(Message.thread_id == thread.id)
    db.query(MessageResponse).filter(MessageResponse.message_id.in_(message_ids)).delete(
        synchronize_session=False
    )
    db.query(Message).filter(Message.thread_id == thread.id).delete(synchronize_session=False)
    db.delete(thread)
    db.commit()


# ── Titles ────────────────────────────────────────────────────────────────────

def _strip_prefix(title: str) -> str | None:
    lower = title.lower()
    for prefix in _TITLE_PREFIXES:
        if lower.startswith(prefix) and (len(lower) == len(prefix) or not lower[len(prefix)].isalnum()):
            return title[len(prefix):].lstrip(" ,")
    return None


def derive_title(text: str) -> str:
    """Short thread title from the first user message."""
    title = " ".join(text.split())
    while (stripped := _strip_prefix(title)) is not None:
        title = stripped
    title = title.strip().rstrip("?.!").strip()
    if len(title) < 3:
        return FALLBACK_TITLE
    title = title[0].upper() + title[1:]
    if len(title) > TITLE_MAX_LENGTH:
        title = title[: TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return title


def _maybe_auto_title(db: Session, thread_id: str, first_user_text: str) -> None:
    count = db.query(Message).filter(Message.thread_id == thread_id).count()
    if count > 2:
        return
    # Guarded on the placeholder so a user-renamed thread is never clobbered
    db.execute(
        update(Thread)
        .where(Thread.id == thread_id, Thread.title == PLACEHOLDER_TITLE)
        .values(title=derive_title(first_user_text))
    )
    db.commit()


# ── Messages ──────────────────────────────────────────────────────────────────

def _recent_messages(db: Session, thread_id: str) -> list[Message]:
    """Newest first."""
    return (
        db.query(Message)
        .filter(Message.thread_id == thread_id)
        .order_by(Message.created_at.desc())
        .limit(RECENT_MESSAGE_WINDOW)
        .all()
    )


def _is_placeholder(message: Message) -> bool:
    return message.role == "assistant" and len((message.content or "").strip()) <= PLACEHOLDER_MAX_CHARS


def _find_duplicate_user_message(recent: list[Message], text: str) -> Message | None:
    # Only the latest user turn, and only if no finished answer follows it
    for message in recent:
        if message.role == "assistant" and not _is_placeholder(message):
            return None
        if message.role == "user":
            return message if message.content == text else None
    return None


def _find_placeholder(recent: list[Message]) -> Message | None:
    for message in recent:
        if message.role == "user":
            continue
        return message if _is_placeholder(message) else None
    return None


def _upsert_primary_response(
    db: Session, message_id: str, model_id: str, content: str, tokens_used: int
) -> None:
    primary = (
        db.query(MessageResponse)
        .filter(MessageResponse.message_id == message_id, MessageResponse.is_primary.is_(True))
        .first()
    )
    if primary:
        primary.model = model_id
        primary.content = content
        primary.tokens_used = tokens_used
    else:
        db.execute(
            update(MessageResponse)
            .where(MessageResponse.message_id == message_id)
            .values(is_primary=False)
        )
        db.add(MessageResponse(
            message_id=message_id,
            model=model_id,
            content=content,
            tokens_used=tokens_used,
            is_primary=True,
        ))
    db.commit()


def save_exchange(
    db: Session,
    thread_id: str,
    user_text: str,
    assistant_text: str,
    model_id: str | None = None,
    tokens_used: int = 0,
) -> SavedExchange:
    """Persist one user/assistant turn, user row strictly before assistant row."""
    saved = SavedExchange()
    try:
        recent = _recent_messages(db, thread_id)

        user_message = _find_duplicate_user_message(recent, user_text)
        if user_message is None:
            user_message = Message(thread_id=thread_id, role="user", content=user_text, created_at=utcnow())
            db.add(user_message)
            db.commit()
        saved.user_message_id = user_message.id

        not_before = user_message.created_at + timedelta(microseconds=1)
        assistant_message = _find_placeholder(recent)
        if assistant_message is not None:
            assistant_message.content = assistant_text
            if assistant_message.created_at < not_before:
                assistant_message.created_at = max(utcnow(), not_before)
        else:
            assistant_message = Message(
                thread_id=thread_id,
                role="assistant",
                content=assistant_text,
                created_at=max(utcnow(), not_before),
            )
            db.add(assistant_message)
        db.commit()
        saved.assistant_message_id = assistant_message.id

        if model_id:
            _upsert_primary_response(db, assistant_message.id, model_id, assistant_text, tokens_used)

        db.execute(
            update(Thread)
            .where(Thread.id == thread_id)
            .values(updated_at=utcnow())
        )
        db.commit()
        _maybe_auto_title(db, thread_id, user_text)
    except Exception:
        db.rollback()
        logger.exception("Failed to save exchange to thread %s", thread_id)
        return SavedExchange()
    return saved


def list_messages(db: Session, thread_id: str, user_id: int) -> list[dict]:
    """Messages in conversation order; assistant rows carry their primary model."""
    get_owned_thread(db, thread_id, user_id)
    messages = (
        db.query(Message)
        .filter(Message.thread_id == thread_id)
        .order_by(Message.created_at.asc())
        .all()
    )
    assistant_ids = [m.id for m in messages if m.role == "assistant"]
    models: dict[str, str] = {}
    if assistant_ids:
        rows = (
            db.query(MessageResponse.message_id, MessageResponse.model)
            .filter(MessageResponse.message_id.in_(assistant_ids), MessageResponse.is_primary.is_(True))
            .all()
        )
        models = {message_id: model for message_id, model in rows}
    return [
        {
            "id": m.id,
            "role": m.role,
            "content": m.content,
            "model": models.get(m.id),
            "created_at": m.created_at,
        }
        for m in messages
    ]


# ── Alternate responses ───────────────────────────────────────────────────────

def get_owned_message(db: Session, message_id: str, user_id: int) -> Message:
    message = (
        db.query(Message)
        .join(Thread, Thread.id == Message.thread_id)
        .filter(Message.id == message_id, Thread.user_profile_id == user_id)
        .first()
    )
    if message is None:
        raise ChatError(ErrorKind.NOT_FOUND, "Message not found.")
    return message


def list_responses(db: Session, message_id: str) -> list[MessageResponse]:
    return (
        db.query(MessageResponse)
        .filter(MessageResponse.message_id == message_id)
        .order_by(MessageResponse.created_at.asc())
        .all()
    )


def add_response(db: Session, message_id: str, model_id: str, content: str, tokens_used: int) -> MessageResponse:
    response = MessageResponse(
        message_id=message_id,
        model=model_id,
        content=content,
        tokens_used=tokens_used,
        is_primary=False,
    )
    db.add(response)
    db.commit()
    return response


def switch_primary_response(db: Session, message_id: str, response_id: str) -> MessageResponse:
    """Make *response_id* the primary answer and copy its content to the message.

    Three committed steps: clear all, set one, copy content. A crash between
    the first two leaves zero primaries, never two.
    """
    chosen = (
        db.query(MessageResponse)
        .filter(MessageResponse.id == response_id, MessageResponse.message_id == message_id)
        .first()
    )
    if chosen is None:
        raise ChatError(ErrorKind.NOT_FOUND, "Response not found.")

    db.execute(
        update(MessageResponse)
        .where(MessageResponse.message_id == message_id)
        .values(is_primary=False)
    )
    db.commit()

    db.execute(
        update(MessageResponse)
        .where(MessageResponse.id == response_id)
        .values(is_primary=True)
    )
    db.commit()

    db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(content=chosen.content)
    )
    db.commit()
    return chosen
