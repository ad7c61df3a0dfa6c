"""Tests for the best-effort audit pipeline."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from tribeguard.service.audit import AuditPipeline
from tribeguard.storage.memory import MemoryAuditStore, MemoryCache
from tribeguard.storage.models import AuditEvent
from tribeguard.storage.redis_cache import KEY_PREFIX


def _event(**overrides) -> AuditEvent:
    fields = dict(
        user_id="user-1",
        organization_id="org-1",
        platform="twitter",
        action="callback",
        success=True,
        ip="10.0.0.1",
        user_agent="pytest",
    )
    fields.update(overrides)
    return AuditEvent(**fields)


class TestRecord:
    async def test_writes_durable_and_cache_copies(self, clock):
        durable = MemoryAuditStore()
        cache = MemoryCache(clock=clock)
        pipeline = AuditPipeline(durable, cache, environment="test", clock=clock)

        stamped = await pipeline.record(_event())

        assert stamped.environment == "test"
        assert stamped.timestamp == datetime.fromtimestamp(clock.now, tz=timezone.utc)
        stored = durable.list_events(user_id="user-1")
        assert [e.id for e in stored] == [stamped.id]

        keys = cache.keys(KEY_PREFIX["oauth_audit"])
        assert keys == [f"oauth:audit:user-1_{int(clock.now * 1000)}_{stamped.id}"]
        cached = await cache.get_audit_event(keys[0])
        assert cached["action"] == "callback"
        assert cached["environment"] == "test"

    async def test_cache_copy_expires_after_a_day(self, clock):
        cache = MemoryCache(clock=clock)
        pipeline = AuditPipeline(MemoryAuditStore(), cache, environment="test", clock=clock)
        await pipeline.record(_event())
        key = cache.keys(KEY_PREFIX["oauth_audit"])[0]
        clock.advance(24 * 60 * 60 + 1)
        assert await cache.get_audit_event(key) is None

    async def test_original_event_is_not_mutated(self):
        event = _event()
        pipeline = AuditPipeline(MemoryAuditStore(), MemoryCache(), environment="test")
        await pipeline.record(event)
        assert event.timestamp is None
        assert event.environment is None

    async def test_durable_failure_is_swallowed(self):
        durable = MagicMock()
        durable.append.side_effect = RuntimeError("database down")
        cache = MemoryCache()
        pipeline = AuditPipeline(durable, cache, environment="test")

        with patch("tribeguard.service.audit.logger") as mock_logger:
            await pipeline.record(_event())

        assert mock_logger.error.call_args[0][0] == "audit_durable_write_failed"
        # The cache copy is still written
        assert cache.keys(KEY_PREFIX["oauth_audit"])

    async def test_cache_failure_is_swallowed(self):
        durable = MemoryAuditStore()
        cache = MagicMock()
        cache.cache_audit_event = AsyncMock(side_effect=ConnectionError("redis down"))
        pipeline = AuditPipeline(durable, cache, environment="test")

        with patch("tribeguard.service.audit.logger") as mock_logger:
            await pipeline.record(_event())

        assert mock_logger.warning.call_args[0][0] == "audit_cache_write_failed"
        assert len(durable.list_events()) == 1


class TestSubmit:
    async def test_submit_runs_in_background_and_drains(self):
        durable = MemoryAuditStore()
        pipeline = AuditPipeline(durable, MemoryCache(), environment="test")

        for i in range(5):
            pipeline.submit(_event(user_id=f"user-{i}"))
        assert pipeline.pending == 5

        await pipeline.drain()
        assert pipeline.pending == 0
        assert len(durable.list_events()) == 5

    async def test_failed_background_write_does_not_raise_on_drain(self):
        durable = MagicMock()
        durable.append.side_effect = RuntimeError("database down")
        pipeline = AuditPipeline(durable, None, environment="test")
        pipeline.submit(_event())
        await pipeline.drain()

    async def test_same_millisecond_events_keep_separate_cache_copies(self, clock):
        cache = MemoryCache(clock=clock)
        pipeline = AuditPipeline(MemoryAuditStore(), cache, environment="test", clock=clock)
        await pipeline.record(_event(success=False))
        await pipeline.record(_event(success=True))
        keys = cache.keys(KEY_PREFIX["oauth_audit"])
        assert len(keys) == 2
        cached = [await cache.get_audit_event(key) for key in keys]
        assert sorted(entry["success"] for entry in cached) == [False, True]

    async def test_backlog_cap_drops_and_logs(self):
        durable = MemoryAuditStore()
        pipeline = AuditPipeline(durable, None, environment="test", max_pending=2)

        with patch("tribeguard.service.audit.logger") as mock_logger:
            first = pipeline.submit(_event())
            second = pipeline.submit(_event())
            dropped = pipeline.submit(_event(action="initiate"))

        assert first is not None and second is not None
        assert dropped is None
        assert pipeline.pending == 2
        assert mock_logger.error.call_args[0][0] == "audit_backlog_full"
        assert mock_logger.error.call_args[1]["action"] == "initiate"

        await pipeline.drain()
        assert len(durable.list_events()) == 2
        assert pipeline.submit(_event()) is not None
        await pipeline.drain()
