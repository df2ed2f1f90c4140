"""Daily token allowance: grant once per window, atomic consume, fail-open reads.

Every write to ``tokens_remaining`` goes through this module. The balance
check and the decrement are a single guarded ``UPDATE`` so concurrent
requests for the same user cannot both spend a stale balance.

Failure policy: when the store is unreachable, ``remaining`` reports the full
cap and ``consume`` reports success. Availability wins over strict
enforcement; each occurrence is logged at WARNING.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from database import upsert_insert, utcnow
from models.ledger import DailyTokenAllowance

logger = logging.getLogger(__name__)


class TokenLedger(Protocol):
    cap: int

    def grant_if_absent_or_expired(self, user_id: int) -> bool: ...

    def remaining(self, user_id: int) -> int: ...

    def consume(self, user_id: int, amount: int) -> bool: ...


class SqlTokenLedger:
    """:class:`TokenLedger` backed by ``daily_token_allowances`` rows."""

    def __init__(self, db: Session, cap: int | None = None, window: timedelta | None = None):
        self.db = db
        self.cap = settings.DAILY_TOKEN_CAP if cap is None else cap
        self.window = window or timedelta(hours=settings.ALLOWANCE_WINDOW_HOURS)

    # ── queries ────────────────────────────────────────────────────────────

    def current(self, user_id: int, now: datetime | None = None) -> DailyTokenAllowance | None:
        """The unexpired allowance for *user_id*, if any (raises on store errors)."""
        now = now or utcnow()
        return (
            self.db.query(DailyTokenAllowance)
            .filter(
                DailyTokenAllowance.user_profile_id == user_id,
                DailyTokenAllowance.expires_at > now,
            )
            .order_by(DailyTokenAllowance.expires_at.desc(), DailyTokenAllowance.id.desc())
            .populate_existing()
            .first()
        )

    def remaining(self, user_id: int) -> int:
        try:
            allowance = self.current(user_id)
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning(
                "Ledger unreachable reading balance for user %s; failing open with full cap %d",
                user_id, self.cap, exc_info=True,
            )
            return self.cap
        return allowance.tokens_remaining if allowance else self.cap

    # ── mutations ──────────────────────────────────────────────────────────

    def grant_if_absent_or_expired(self, user_id: int) -> bool:
        """Issue a fresh allowance unless an unexpired one exists.

        Returns True when a new allowance was written. Racing callers resolve
        on the (user, period) unique key: the loser's insert is a no-op.
        """
        now = utcnow()
        try:
            if self.current(user_id, now) is not None:
                return False
            values = {
                "granted_at": now,
                "expires_at": now + self.window,
                "tokens_granted": self.cap,
                "tokens_remaining": self.cap,
            }
            stmt = upsert_insert(self.db, DailyTokenAllowance).values(
                user_profile_id=user_id, period_start=now.date(), **values,
            )
            # Same-period row that already expired (short windows) is refreshed in place
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_profile_id", "period_start"],
                set_=values,
                where=DailyTokenAllowance.expires_at <= now,
            )
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Ledger unreachable granting allowance for user %s", user_id, exc_info=True)
            return False

        granted = result.rowcount == 1
        if granted:
            logger.info("Granted %d daily tokens to user %s until %s", self.cap, user_id, values["expires_at"])
        return granted

    def _decrement(self, user_id: int, amount: int, now: datetime) -> bool:
        # Same row current() reads, even if an overlapping grant exists
        latest = (
            select(DailyTokenAllowance.id)
            .where(
                DailyTokenAllowance.user_profile_id == user_id,
                DailyTokenAllowance.expires_at > now,
            )
            .order_by(DailyTokenAllowance.expires_at.desc(), DailyTokenAllowance.id.desc())
            .limit(1)
            .scalar_subquery()
        )
        result = self.db.execute(
            update(DailyTokenAllowance)
            .where(
                DailyTokenAllowance.id == latest,
                DailyTokenAllowance.tokens_remaining >= amount,
            )
            .values(tokens_remaining=DailyTokenAllowance.tokens_remaining - amount)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def consume(self, user_id: int, amount: int) -> bool:
        """Atomically take *amount* tokens; False (balance untouched) if insufficient."""
        if amount <= 0:
            return True
        now = utcnow()
        try:
            if self._decrement(user_id, amount, now):
                return True
            if self.current(user_id, now) is None:
                self.grant_if_absent_or_expired(user_id)
                if self._decrement(user_id, amount, now):
                    return True
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning(
                "Ledger unreachable consuming %d tokens for user %s; failing open",
                amount, user_id, exc_info=True,
            )
            return True

        logger.info("Insufficient daily tokens for user %s: need %d", user_id, amount)
        return False

    def reset(self, user_id: int) -> bool:
        """Discard the current allowance and grant a fresh one."""
        now = utcnow()
        try:
            self.db.execute(
                delete(DailyTokenAllowance).where(
                    DailyTokenAllowance.user_profile_id == user_id,
                    DailyTokenAllowance.period_start == now.date(),
                )
            )
            self.db.execute(
                update(DailyTokenAllowance)
                .where(
                    DailyTokenAllowance.user_profile_id == user_id,
                    DailyTokenAllowance.expires_at > now,
                )
                .values(expires_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to reset daily tokens for user %s", user_id)
            return False
        logger.info("Reset daily tokens for user %s", user_id)
        return self.grant_if_absent_or_expired(user_id)


def purge_expired_allowances(db: Session, older_than: timedelta) -> int:
    """Delete allowances that expired more than *older_than* ago."""
    cutoff = utcnow() - older_than
    result = db.execute(delete(DailyTokenAllowance).where(DailyTokenAllowance.expires_at < cutoff))
    db.commit()
    return result.rowcount or 0
