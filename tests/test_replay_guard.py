"""Tests for one-time OAuth state consumption."""

import asyncio
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest

from tribeguard.service.errors import ReplayDetected, ValidationError
from tribeguard.service.replay import ReplayGuard
from tribeguard.storage.memory import MemoryCache
from tribeguard.storage.redis_cache import KEY_PREFIX, RedisCache


def _redis_cache() -> RedisCache:
    return RedisCache(
        "redis://fake",
        client=fakeredis.aioredis.FakeRedis(
            server=fakeredis.FakeServer(), decode_responses=True
        ),
    )


async def _consume_outcome(guard: ReplayGuard, state: str) -> str:
    try:
        await guard.consume(state)
    except ReplayDetected:
        return "replay"
    return "ok"


class TestReplayGuardMemory:
    async def test_first_consume_succeeds_second_fails(self):
        guard = ReplayGuard(MemoryCache())
        await guard.consume("st_001")
        with pytest.raises(ReplayDetected) as excinfo:
            await guard.consume("st_001")
        assert excinfo.value.message == "OAuth state parameter has already been used"
        assert excinfo.value.status_code == 400

    async def test_distinct_states_are_independent(self):
        guard = ReplayGuard(MemoryCache())
        await guard.consume("st_001")
        await guard.consume("st_002")

    async def test_missing_state(self):
        guard = ReplayGuard(MemoryCache())
        with pytest.raises(ValidationError) as excinfo:
            await guard.consume(None)
        assert excinfo.value.message == "OAuth state parameter is required"
        assert not isinstance(excinfo.value, ReplayDetected)

    async def test_concurrent_consumes_admit_exactly_one(self):
        guard = ReplayGuard(MemoryCache())
        outcomes = await asyncio.gather(
            *[_consume_outcome(guard, "st_race") for _ in range(25)]
        )
        assert outcomes.count("ok") == 1
        assert outcomes.count("replay") == 24

    async def test_record_expires_after_ttl(self, clock):
        cache = MemoryCache(clock=clock)
        guard = ReplayGuard(cache, ttl_seconds=3600, clock=clock)
        await guard.consume("st_ttl")
        clock.advance(3601)
        await guard.consume("st_ttl")

    async def test_replay_is_logged(self):
        guard = ReplayGuard(MemoryCache())
        await guard.consume("st_log")
        with patch("tribeguard.service.replay.logger") as mock_logger:
            with pytest.raises(ReplayDetected):
                await guard.consume("st_log")
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "oauth_state_replay_detected"


class TestReplayGuardRedis:
    async def test_concurrent_consumes_admit_exactly_one(self):
        guard = ReplayGuard(_redis_cache())
        outcomes = await asyncio.gather(
            *[_consume_outcome(guard, "st_redis") for _ in range(25)]
        )
        assert outcomes.count("ok") == 1

    async def test_consumed_record_has_expiry(self):
        cache = _redis_cache()
        guard = ReplayGuard(cache, ttl_seconds=3600)
        await guard.consume("st_001")
        key = f"{KEY_PREFIX['oauth_used_state']}st_001"
        ttl = await cache.client.ttl(key)
        assert 0 < ttl <= 3600
        assert int(await cache.client.get(key)) > 0
