"""Token accounting models: daily allowance, monthly aggregate, usage events."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from database import Base, utcnow


class DailyTokenAllowance(Base):
    """One rolling allowance per user per grant period.

    ``period_start`` is the UTC date of the grant, and (user, period) is the
    double-grant guard within a day. Two grants racing across UTC midnight
    land on different dates and can both insert; reads and consumes always
    target the latest-expiring row, so the older one is never spent.
    """

    __tablename__ = "daily_token_allowances"
    __table_args__ = (
        UniqueConstraint("user_profile_id", "period_start", name="uq_allowance_user_period"),
        Index("ix_allowance_user_expiry", "user_profile_id", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_profile_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id", ondelete="CASCADE"))
    period_start: Mapped[date] = mapped_column(Date)
    granted_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    tokens_granted: Mapped[int] = mapped_column(Integer)
    tokens_remaining: Mapped[int] = mapped_column(Integer)

    def __repr__(self):
        return f"<DailyTokenAllowance user={self.user_profile_id} remaining={self.tokens_remaining}>"


class TokenUsage(Base):
    """Monthly aggregate of raw provider tokens, incremented monotonically.

    Multipliers only apply to the daily allowance.
    """

    __tablename__ = "token_usage"
    __table_args__ = (
        UniqueConstraint("user_profile_id", "period_start", name="uq_token_usage_user_period"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_profile_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id", ondelete="CASCADE"))
    period_start: Mapped[date] = mapped_column(Date)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class UsageEvent(Base):
    """Per-request record written by reconciliation."""

    __tablename__ = "usage_events"
    __table_args__ = (Index("ix_usage_event_user_time", "user_profile_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    user_profile_id: Mapped[int] = mapped_column(ForeignKey("user_profiles.id", ondelete="CASCADE"))
    model: Mapped[str] = mapped_column(String(255))
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    effective_tokens: Mapped[int] = mapped_column(Integer, default=0)
    web_search: Mapped[bool] = mapped_column(Boolean, default=False)
    streamed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
