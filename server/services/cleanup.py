"""Periodic cleanup job: expired response-cache entries and stale allowances.

``run_cleanup`` is synchronous and safe to call from any thread.
``cleanup_loop`` is started from the application lifespan and runs it in a
worker thread every ``CLEANUP_INTERVAL_SECONDS`` so request handling is
never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from config import settings
from services.cache import ResponseCache

logger = logging.getLogger(__name__)


def run_cleanup(cache: ResponseCache | None = None, session_factory=None) -> dict:
    """Purge expired cache entries and allowances past retention.

    Returns counts per kind. Each part runs even if the other fails.
    """
    counts = {"cache_entries": 0, "allowances": 0}

    if cache is not None:
        try:
            counts["cache_entries"] = cache.purge_expired()
        except Exception:
            logger.exception("Failed to purge response cache")

    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    from services.ledger import purge_expired_allowances

    try:
        with session_factory() as db:
            counts["allowances"] = purge_expired_allowances(
                db, timedelta(days=settings.ALLOWANCE_RETENTION_DAYS)
            )
    except Exception:
        logger.exception("Failed to purge expired allowances")

    if counts["cache_entries"] or counts["allowances"]:
        logger.info(
            "Cleanup removed %d cache entries and %d allowances",
            counts["cache_entries"], counts["allowances"],
        )
    return counts


async def cleanup_loop(cache: ResponseCache | None = None, interval: float | None = None) -> None:
    interval = settings.CLEANUP_INTERVAL_SECONDS if interval is None else interval
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_cleanup, cache)
        except Exception:
            logger.exception("Cleanup run failed, will retry next interval")
