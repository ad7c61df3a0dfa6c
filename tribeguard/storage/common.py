"""Store capabilities shared by the Redis and in-memory backends.

Services depend on these protocols rather than a concrete backend so the
same stage code runs against Redis in production and ``MemoryCache`` in tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from tribeguard.storage.models import AuditEvent, RateWindow


class GuardStore(Protocol):
    def verify_connection(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

    async def get_or_create_csrf_secret(
        self, session_id: str, candidate: str, ttl_seconds: int
    ) -> str: ...

    async def get_csrf_secret(self, session_id: str) -> Optional[str]: ...

    async def mark_oauth_state_used(
        self, state: str, consumed_at_ms: int, ttl_seconds: int
    ) -> bool: ...

    async def incr_rate_window(
        self, key: str, window_ms: int, now_ms: int
    ) -> RateWindow: ...

    async def cache_audit_event(
        self,
        user_id: str,
        event_id: str,
        record: Dict[str, Any],
        ttl_seconds: int,
        now_ms: int,
    ) -> str: ...

    async def get_audit_event(self, key: str) -> Optional[dict]: ...

    async def purge_lapsed_keys(self, prefixes: Iterable[str]) -> int: ...


class AuditStore(Protocol):
    """Durable, synchronous audit storage (Postgres or memory)."""

    def verify_connection(self) -> None: ...

    def append(self, event: AuditEvent) -> None: ...

    def list_events(
        self, *, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...

    def delete_older_than(self, cutoff: datetime, limit: int) -> int: ...

    def close(self) -> None: ...
