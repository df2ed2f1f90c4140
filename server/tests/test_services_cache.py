"""Tests for services/cache.py and services/cleanup.py."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from services.cache import (
    InMemoryResponseCache,
    NullResponseCache,
    RedisResponseCache,
    create_response_cache,
    response_cache_key,
)


# ── Keys ──────────────────────────────────────────────────────────────────────

class TestCacheKey:
    MESSAGES = [{"role": "user", "content": "hi"}]

    def test_stable_for_identical_input(self):
        flags = {"web_search": False, "wiki_grounding": False}
        assert response_cache_key(1, "openai/gpt-4o", self.MESSAGES, flags) == response_cache_key(
            1, "openai/gpt-4o", list(self.MESSAGES), dict(reversed(list(flags.items())))
        )

    def test_scoped_by_user_model_and_flags(self):
        base = response_cache_key(1, "openai/gpt-4o", self.MESSAGES, {"web_search": False})
        assert base != response_cache_key(2, "openai/gpt-4o", self.MESSAGES, {"web_search": False})
        assert base != response_cache_key(1, "sarvam-m", self.MESSAGES, {"web_search": False})
        assert base != response_cache_key(1, "openai/gpt-4o", self.MESSAGES, {"web_search": True})


# ── In-memory backend ────────────────────────────────────────────────────────

class TestInMemoryResponseCache:
    def test_miss_then_hit(self):
        cache = InMemoryResponseCache(ttl=60)
        assert cache.get("k") is None
        cache.set("k", {"content": "hello"})
        assert cache.get("k") == {"content": "hello"}

    def test_entry_expires(self):
        cache = InMemoryResponseCache(ttl=60)
        with patch("services.cache.time.monotonic", return_value=1000.0):
            cache.set("k", {"content": "hello"})
        with patch("services.cache.time.monotonic", return_value=1059.0):
            assert cache.get("k") == {"content": "hello"}
        with patch("services.cache.time.monotonic", return_value=1060.0):
            assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self):
        cache = InMemoryResponseCache(ttl=60)
        with patch("services.cache.time.monotonic", return_value=0.0):
            cache.set("short", {"v": 1}, ttl=5)
            cache.set("long", {"v": 2})
        with patch("services.cache.time.monotonic", return_value=10.0):
            assert cache.get("short") is None
            assert cache.get("long") == {"v": 2}

    def test_purge_expired(self):
        cache = InMemoryResponseCache(ttl=60)
        with patch("services.cache.time.monotonic", return_value=0.0):
            cache.set("a", {}, ttl=1)
            cache.set("b", {}, ttl=1)
            cache.set("c", {}, ttl=100)
        with patch("services.cache.time.monotonic", return_value=50.0):
            assert cache.purge_expired() == 2
        assert len(cache) == 1

    def test_evicts_soonest_expiry_when_full(self):
        cache = InMemoryResponseCache(ttl=60, max_entries=2)
        with patch("services.cache.time.monotonic", return_value=0.0):
            cache.set("a", {}, ttl=10)
            cache.set("b", {}, ttl=100)
            cache.set("c", {}, ttl=50)
            assert cache.get("a") is None
            assert cache.get("b") == {}
            assert cache.get("c") == {}

    def test_clear(self):
        cache = InMemoryResponseCache()
        cache.set("a", {})
        cache.clear()
        assert len(cache) == 0


# ── Redis backend ─────────────────────────────────────────────────────────────

class TestRedisResponseCache:
    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        with patch("redis.from_url", return_value=client):
            yield client

    def test_set_uses_expiry(self, redis_client):
        cache = RedisResponseCache("redis://localhost:6379/0", ttl=30)
        cache.set("k", {"content": "hi"})
        redis_client.set.assert_called_once_with("k", json.dumps({"content": "hi"}), ex=30)

    def test_get_decodes(self, redis_client):
        redis_client.get.return_value = json.dumps({"content": "hi"})
        assert RedisResponseCache("redis://x").get("k") == {"content": "hi"}

    def test_errors_are_misses(self, redis_client):
        redis_client.get.side_effect = ConnectionError("redis down")
        redis_client.set.side_effect = ConnectionError("redis down")
        cache = RedisResponseCache("redis://x")
        assert cache.get("k") is None
        cache.set("k", {"content": "hi"})

    def test_corrupt_value_is_miss(self, redis_client):
        redis_client.get.return_value = "{not json"
        assert RedisResponseCache("redis://x").get("k") is None


# ── Factory ───────────────────────────────────────────────────────────────────

def test_factory_backends():
    assert isinstance(create_response_cache("memory"), InMemoryResponseCache)
    assert isinstance(create_response_cache("none"), NullResponseCache)
    with patch("redis.from_url", return_value=MagicMock()):
        assert isinstance(create_response_cache("redis"), RedisResponseCache)


def test_null_cache_never_hits():
    cache = NullResponseCache()
    cache.set("k", {"content": "x"})
    assert cache.get("k") is None


# ── Cleanup ───────────────────────────────────────────────────────────────────

class TestCleanup:
    def test_purges_cache_and_old_allowances(self, db, session_factory, user_profile):
        from database import utcnow
        from models.ledger import DailyTokenAllowance
        from services.cleanup import run_cleanup

        now = utcnow()
        db.add(DailyTokenAllowance(
            user_profile_id=user_profile.id,
            period_start=(now - timedelta(days=30)).date(),
            granted_at=now - timedelta(days=30),
            expires_at=now - timedelta(days=29),
            tokens_granted=40_000,
            tokens_remaining=0,
        ))
        db.commit()

        cache = InMemoryResponseCache(ttl=0)
        cache.set("stale", {})

        counts = run_cleanup(cache, session_factory=session_factory)
        assert counts == {"cache_entries": 1, "allowances": 1}
        assert db.query(DailyTokenAllowance).count() == 0

    def test_cache_failure_does_not_stop_allowance_purge(self, session_factory, caplog):
        from services.cleanup import run_cleanup

        cache = MagicMock()
        cache.purge_expired.side_effect = RuntimeError("boom")
        counts = run_cleanup(cache, session_factory=session_factory)
        assert counts["allowances"] == 0
        assert "Failed to purge response cache" in caplog.text

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self):
        import asyncio
        from unittest.mock import AsyncMock

        from services import cleanup

        sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])
        run = MagicMock(side_effect=[RuntimeError("first run fails"), {"cache_entries": 0, "allowances": 0}])

        with patch.object(cleanup.asyncio, "sleep", sleep), patch.object(cleanup, "run_cleanup", run):
            with pytest.raises(asyncio.CancelledError):
                await cleanup.cleanup_loop(cache=None, interval=0)
        assert run.call_count == 2
