"""Threads API — list, read and delete the caller's conversations."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.conversation import Thread
from models.user import UserProfile
from schemas.thread import MessageOut, ThreadOut
from services import conversations

router = APIRouter()


@router.get("/")
def list_threads(
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    total = db.query(Thread).filter(Thread.user_profile_id == user.id).count()
    threads = conversations.list_threads(db, user.id, limit=limit, offset=offset)
    return {"items": [ThreadOut.model_validate(t) for t in threads], "total": total}


@router.get("/{thread_id}/messages")
def list_thread_messages(
    thread_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    messages = conversations.list_messages(db, thread_id, user.id)
    items = [MessageOut.model_validate(m) for m in messages]
    return {"items": items, "total": len(items)}


@router.delete("/{thread_id}", status_code=204)
def delete_thread(
    thread_id: str,
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    conversations.delete_thread(db, thread_id, user.id)
