"""Tokens API — daily allowance status."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import get_current_user
from config import settings
from database import get_db
from models.user import UserProfile
from schemas.tokens import TokenStatus
from services.errors import ChatError, ErrorKind
from services.ledger import SqlTokenLedger
from services.usage import get_monthly_usage

router = APIRouter()


def _status(db: Session, ledger: SqlTokenLedger, user: UserProfile) -> TokenStatus:
    allowance = ledger.current(user.id)
    return TokenStatus(
        tokens_remaining=allowance.tokens_remaining if allowance else ledger.cap,
        daily_cap=allowance.tokens_granted if allowance else ledger.cap,
        expires_at=allowance.expires_at if allowance else None,
        monthly_used=get_monthly_usage(db, user.id),
    )


@router.get("/current", response_model=TokenStatus)
def current_tokens(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    """Remaining daily allowance; grants today's allowance on first read."""
    ledger = SqlTokenLedger(db)
    ledger.grant_if_absent_or_expired(user.id)
    return _status(db, ledger, user)


@router.post("/reset", response_model=TokenStatus)
def reset_tokens(
    db: Session = Depends(get_db),
    user: UserProfile = Depends(get_current_user),
):
    if not settings.DEBUG:
        raise ChatError(ErrorKind.NOT_FOUND, "Not found.")
    ledger = SqlTokenLedger(db)
    if not ledger.reset(user.id):
        raise ChatError(ErrorKind.INTERNAL_ERROR, "Failed to reset tokens")
    return _status(db, ledger, user)
