"""Monthly aggregate usage counter and per-request usage events."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.orm import Session

from database import upsert_insert, utcnow
from models.ledger import TokenUsage, UsageEvent

logger = logging.getLogger(__name__)


def month_start(today: date | None = None) -> date:
    today = today or utcnow().date()
    return today.replace(day=1)


def add_monthly_usage(db: Session, user_id: int, tokens: int) -> None:
    """Increment the user's aggregate for the current month (single upsert)."""
    if tokens <= 0:
        return
    stmt = upsert_insert(db, TokenUsage).values(
        user_profile_id=user_id,
        period_start=month_start(),
        tokens_used=tokens,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_profile_id", "period_start"],
        set_={"tokens_used": TokenUsage.tokens_used + tokens, "updated_at": utcnow()},
    )
    db.execute(stmt)
    db.commit()


def get_monthly_usage(db: Session, user_id: int) -> int:
    row = (
        db.query(TokenUsage)
        .filter(TokenUsage.user_profile_id == user_id, TokenUsage.period_start == month_start())
        .populate_existing()
        .first()
    )
    return row.tokens_used if row else 0


def record_usage_event(
    db: Session,
    user_id: int,
    model: str,
    input_tokens: int,
    output_tokens: int,
    effective_tokens: int,
    *,
    web_search: bool = False,
    streamed: bool = False,
) -> UsageEvent:
    event = UsageEvent(
        user_profile_id=user_id,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        effective_tokens=effective_tokens,
        web_search=web_search,
        streamed=streamed,
    )
    db.add(event)
    db.commit()
    return event
