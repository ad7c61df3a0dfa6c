from __future__ import annotations

import asyncio
import json
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from tribeguard.logging import get_logger
from tribeguard.storage.models import AuditEvent, RateWindow
from tribeguard.storage.redis_cache import KEY_PREFIX


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class MemoryCache:
    """In-process stand-in for ``RedisCache``.

    Only suitable for tests and single-process development: every method
    mirrors the Redis semantics (expiry, set-if-absent, per-window counters)
    under one asyncio lock, which is never held across real I/O.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        # key -> (value, expires_at epoch seconds or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= now:
            self._data.pop(key, None)
            return None
        return value

    async def get_or_create_csrf_secret(
        self, session_id: str, candidate: str, ttl_seconds: int
    ) -> str:
        key = f"{KEY_PREFIX['csrf_secret']}{session_id}"
        async with self._lock:
            now = self._clock()
            existing = self._live(key, now)
            if existing:
                return existing
            self._data[key] = (candidate, now + ttl_seconds)
            return candidate

    async def get_csrf_secret(self, session_id: str) -> Optional[str]:
        async with self._lock:
            return self._live(f"{KEY_PREFIX['csrf_secret']}{session_id}", self._clock())

    async def mark_oauth_state_used(
        self, state: str, consumed_at_ms: int, ttl_seconds: int
    ) -> bool:
        key = f"{KEY_PREFIX['oauth_used_state']}{state}"
        async with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._data[key] = (str(consumed_at_ms), now + ttl_seconds)
            return True

    async def incr_rate_window(self, key: str, window_ms: int, now_ms: int) -> RateWindow:
        window_index = now_ms // window_ms
        bucket = f"{key}:{window_index}"
        reset_ms = (window_index + 1) * window_ms - now_ms
        async with self._lock:
            current = self._live(bucket, self._clock())
            count = int(current or 0) + 1
            self._data[bucket] = (str(count), (now_ms + window_ms) / 1000.0)
        return RateWindow(count=count, reset_ms=reset_ms)

    async def cache_audit_event(
        self,
        user_id: str,
        event_id: str,
        record: Dict[str, Any],
        ttl_seconds: int,
        now_ms: int,
    ) -> str:
        key = f"{KEY_PREFIX['oauth_audit']}{user_id}_{now_ms}_{event_id}"
        async with self._lock:
            self._data[key] = (
                json.dumps(record, default=str),
                self._clock() + ttl_seconds,
            )
        return key

    async def get_audit_event(self, key: str) -> Optional[dict]:
        async with self._lock:
            cached = self._live(key, self._clock())
        if not cached:
            return None
        return json.loads(cached)

    async def purge_lapsed_keys(self, prefixes: Iterable[str]) -> int:
        prefixes = tuple(prefixes)
        removed = 0
        async with self._lock:
            now = self._clock()
            for key in [k for k in self._data if k.startswith(prefixes)]:
                _, expires_at = self._data[key]
                if expires_at is None or expires_at <= now:
                    self._data.pop(key, None)
                    removed += 1
        return removed

    def set_raw(self, key: str, value: str, expires_at: Optional[float]) -> None:
        """Write an entry directly, bypassing the domain methods (tests, fixtures)."""
        self._data[key] = (value, expires_at)

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]


class MemoryAuditStore:
    """Durable audit store kept in process memory."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.events: Dict[str, AuditEvent] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def append(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.events[event.id] = event

    def list_events(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e for e in self.events.values() if user_id is None or e.user_id == user_id
            ]
        events.sort(key=lambda e: e.timestamp or _EPOCH, reverse=True)
        return events[:limit]

    def delete_older_than(self, cutoff: datetime, limit: int) -> int:
        with self._data_lock:
            expired = sorted(
                (e for e in self.events.values() if e.timestamp and e.timestamp < cutoff),
                key=lambda e: e.timestamp,
            )[:limit]
            for event in expired:
                self.events.pop(event.id, None)
        return len(expired)

    def close(self) -> None:
        return None
