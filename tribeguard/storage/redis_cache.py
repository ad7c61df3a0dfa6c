from __future__ import annotations

import contextlib
import hashlib
import json
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tribeguard.logging import get_logger
from tribeguard.storage.errors import StoreUnavailable
from tribeguard.storage.models import RateWindow

logger = get_logger(__name__)

KEY_PREFIX = {
    "csrf_secret": "csrf:secret:",
    "oauth_state": "oauth:state:",
    "oauth_used_state": "oauth:used_states:",
    "oauth_audit": "oauth:audit:",
    "rate_limit": "rate:limit:",
}


def rate_limit_key(action: str, subject: str) -> str:
    """Collision-resistant rate key; the subject is hashed to avoid delimiter injection."""
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"{KEY_PREFIX['rate_limit']}{action}:{digest}"


@contextlib.asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (RedisError, OSError) as exc:
        logger.error(
            "redis_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StoreUnavailable(
            "shared store unavailable", {"operation": operation}
        ) from exc


class RedisCache:
    """Redis-backed shared store for CSRF secrets, replay records, counters and audit copies."""

    # Redis commands should never hang a request
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        async with _store_errors("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    # =========================================================================
    # CSRF session secrets
    # =========================================================================

    async def get_or_create_csrf_secret(
        self, session_id: str, candidate: str, ttl_seconds: int
    ) -> str:
        """Atomically attach ``candidate`` to the session unless a secret exists.

        Returns the secret that is in effect after the call, which is the
        candidate only when this call created it.
        """
        key = f"{KEY_PREFIX['csrf_secret']}{session_id}"
        async with _store_errors("csrf_secret_get_or_create"):
            # Retry once if the existing secret expires between SET NX and GET
            for _ in range(2):
                created = await self.client.set(key, candidate, ex=ttl_seconds, nx=True)
                if created:
                    return candidate
                existing = await self.client.get(key)
                if existing:
                    return existing
        raise StoreUnavailable("csrf secret could not be resolved", {"operation": "csrf_secret"})

    async def get_csrf_secret(self, session_id: str) -> Optional[str]:
        async with _store_errors("csrf_secret_get"):
            return await self.client.get(f"{KEY_PREFIX['csrf_secret']}{session_id}")

    # =========================================================================
    # OAuth state replay protection
    # =========================================================================

    async def mark_oauth_state_used(
        self, state: str, consumed_at_ms: int, ttl_seconds: int
    ) -> bool:
        """Record ``state`` as consumed using SET NX EX.

        Returns True only for the single caller that performed the transition
        from unused to consumed.
        """
        key = f"{KEY_PREFIX['oauth_used_state']}{state}"
        async with _store_errors("oauth_state_consume"):
            acquired = await self.client.set(
                key, str(consumed_at_ms), ex=ttl_seconds, nx=True
            )
        return bool(acquired)

    # =========================================================================
    # Fixed window rate limiting
    # =========================================================================

    async def incr_rate_window(self, key: str, window_ms: int, now_ms: int) -> RateWindow:
        """Atomically count one hit in the current tumbling window.

        Each window has its own bucket key, so INCR and PEXPIRE inside one
        MULTI/EXEC cannot race with a window rollover.
        """
        window_index = now_ms // window_ms
        bucket = f"{key}:{window_index}"
        reset_ms = (window_index + 1) * window_ms - now_ms
        async with _store_errors("rate_limit_incr"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(bucket)
                pipe.pexpire(bucket, window_ms)
                count, _ = await pipe.execute()
        return RateWindow(count=int(count), reset_ms=int(reset_ms))

    # =========================================================================
    # Audit cache copies
    # =========================================================================

    async def cache_audit_event(
        self,
        user_id: str,
        event_id: str,
        record: Dict[str, Any],
        ttl_seconds: int,
        now_ms: int,
    ) -> str:
        key = f"{KEY_PREFIX['oauth_audit']}{user_id}_{now_ms}_{event_id}"
        async with _store_errors("audit_cache_write"):
            await self.client.set(key, json.dumps(record, default=str), ex=ttl_seconds)
        return key

    async def get_audit_event(self, key: str) -> Optional[dict]:
        async with _store_errors("audit_cache_read"):
            cached = await self.client.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    # =========================================================================
    # Retention
    # =========================================================================

    async def purge_lapsed_keys(self, prefixes: Iterable[str]) -> int:
        """Delete keys under ``prefixes`` whose TTL has lapsed or was never set.

        Redis normally evicts expired keys itself; this catches keys written
        without an expiry and keys the server has not reclaimed yet.
        """
        removed = 0
        async with _store_errors("purge_lapsed_keys"):
            for prefix in prefixes:
                async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                    ttl_ms = await self.client.pttl(key)
                    # -1: no expiry, -2: already gone, 0: expiring now
                    if ttl_ms is not None and ttl_ms <= 0:
                        removed += int(await self.client.delete(key))
        return removed
