"""Tests for the fixed-window OAuth rate limiter."""

import asyncio
from unittest.mock import patch

import fakeredis
import fakeredis.aioredis
import pytest

from tribeguard.config import Settings
from tribeguard.service.errors import RateLimitedError
from tribeguard.service.rate_limit import (
    LimiterConfig,
    RateLimiter,
    identity_subject,
    oauth_limiter_configs,
)
from tribeguard.storage.memory import MemoryCache
from tribeguard.storage.redis_cache import RedisCache

FIVE_PER_MINUTE = LimiterConfig("callback", 60_000, 5, "Too many OAuth callback attempts")


def _limiter(clock, **kwargs) -> RateLimiter:
    return RateLimiter(MemoryCache(clock=clock), FIVE_PER_MINUTE, clock=clock, **kwargs)


class TestWindow:
    async def test_sixth_request_in_window_is_rejected(self, clock):
        limiter = _limiter(clock)
        for expected_remaining in (4, 3, 2, 1, 0):
            decision = await limiter.check(user_id="u1", ip="10.0.0.1")
            assert decision.allowed
            assert decision.headers["RateLimit-Remaining"] == str(expected_remaining)

        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.check(user_id="u1", ip="10.0.0.1")
        exc = excinfo.value
        assert exc.status_code == 429
        assert exc.to_body() == {"error": "Too many OAuth callback attempts"}
        assert exc.headers["RateLimit-Limit"] == "5"
        assert exc.headers["RateLimit-Remaining"] == "0"
        assert 1 <= int(exc.headers["RateLimit-Reset"]) <= 60
        assert not any(name.startswith("X-RateLimit") for name in exc.headers)

    async def test_admits_again_after_window(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            await limiter.check(user_id="u1", ip="10.0.0.1")
        with pytest.raises(RateLimitedError):
            await limiter.check(user_id="u1", ip="10.0.0.1")

        clock.advance(60)
        decision = await limiter.check(user_id="u1", ip="10.0.0.1")
        assert decision.allowed

    async def test_identities_are_counted_separately(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            await limiter.check(user_id="u1", ip="10.0.0.1")
        decision = await limiter.check(user_id="u2", ip="10.0.0.1")
        assert decision.allowed

    async def test_anonymous_callers_share_ip_bucket(self, clock):
        limiter = _limiter(clock)
        for _ in range(5):
            await limiter.check(user_id=None, ip="10.0.0.9")
        with pytest.raises(RateLimitedError):
            await limiter.check(user_id=None, ip="10.0.0.9")
        assert (await limiter.check(user_id=None, ip="10.0.0.10")).allowed

    async def test_concurrent_hits_never_exceed_max(self, clock):
        limiter = _limiter(clock)

        async def attempt():
            try:
                await limiter.check(user_id="u1", ip="10.0.0.1")
                return True
            except RateLimitedError:
                return False

        results = await asyncio.gather(*[attempt() for _ in range(20)])
        assert results.count(True) == 5

    async def test_redis_backend_counts_atomically(self):
        cache = RedisCache(
            "redis://fake",
            client=fakeredis.aioredis.FakeRedis(
                server=fakeredis.FakeServer(), decode_responses=True
            ),
        )
        limiter = RateLimiter(cache, FIVE_PER_MINUTE)

        async def attempt():
            try:
                await limiter.check(user_id="u1", ip="10.0.0.1")
                return True
            except RateLimitedError:
                return False

        results = await asyncio.gather(*[attempt() for _ in range(12)])
        assert results.count(True) == 5


class TestSkipPredicates:
    async def test_internal_header_skips_outside_production(self, clock):
        limiter = _limiter(clock)
        with patch("tribeguard.service.rate_limit.logger") as mock_logger:
            for _ in range(10):
                decision = await limiter.check(
                    user_id="u1", ip="10.0.0.1", headers={"x-internal-request": "true"}
                )
                assert decision.skipped == "internal_request"
        assert mock_logger.warning.call_args[0][0] == "rate_limit_skipped"

    async def test_internal_header_ignored_in_production(self, clock):
        limiter = _limiter(clock, production=True)
        for _ in range(5):
            await limiter.check(
                user_id="u1", ip="10.0.0.1", headers={"x-internal-request": "true"}
            )
        with pytest.raises(RateLimitedError):
            await limiter.check(
                user_id="u1", ip="10.0.0.1", headers={"x-internal-request": "true"}
            )

    async def test_debug_path_skips(self, clock):
        limiter = _limiter(clock)
        decision = await limiter.check(
            user_id="u1", ip="10.0.0.1", path="/api/v1/debug/oauth/callback"
        )
        assert decision.skipped == "debug_path"

    async def test_debug_bypass_flag(self, clock):
        limiter = _limiter(clock, debug_bypass=True)
        for _ in range(10):
            decision = await limiter.check(user_id="u1", ip="10.0.0.1")
        assert decision.skipped == "debug_bypass"

    def test_bypass_is_off_by_default(self):
        assert Settings().rate_limit_debug_bypass is False


class TestConfig:
    def test_default_oauth_limits(self):
        configs = oauth_limiter_configs(Settings())
        assert (configs["initiate"].window_ms, configs["initiate"].max) == (900_000, 50)
        assert (configs["callback"].window_ms, configs["callback"].max) == (300_000, 10)
        assert (configs["refresh"].window_ms, configs["refresh"].max) == (600_000, 20)
        assert configs["refresh"].message == "Too many token refresh attempts"

    def test_identity_subject(self):
        assert identity_subject("initiate", "u1", "1.2.3.4") == "oauth_initiate_user_u1"
        assert identity_subject("initiate", None, "1.2.3.4") == "oauth_initiate_ip_1.2.3.4"

    def test_non_positive_window_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter(MemoryCache(), LimiterConfig("initiate", 0, 5, "x"))
