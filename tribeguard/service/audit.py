"""Best-effort audit trail for OAuth lifecycle actions.

Each event is written twice: a durable record kept until the retention
sweep deletes it, and a short-lived cache copy in the shared store. The two
writes are independent and neither can fail the request that triggered it.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Set

from tribeguard.logging import get_logger
from tribeguard.storage.common import AuditStore, GuardStore
from tribeguard.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditPipeline:
    def __init__(
        self,
        durable: AuditStore,
        cache: Optional[GuardStore],
        *,
        environment: str,
        cache_ttl_seconds: int = 24 * 60 * 60,
        max_pending: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable = durable
        self.cache = cache
        self.environment = environment
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_pending = max_pending
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    def _stamp(self, event: AuditEvent) -> AuditEvent:
        return dataclasses.replace(
            event,
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            environment=self.environment,
        )

    async def record(self, event: AuditEvent) -> AuditEvent:
        """Write the durable and cache copies; never raises."""
        stamped = self._stamp(event)
        try:
            await asyncio.to_thread(self.durable.append, stamped)
        except Exception as exc:
            logger.error(
                "audit_durable_write_failed",
                action=stamped.action,
                platform=stamped.platform,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if self.cache is not None:
            try:
                await self.cache.cache_audit_event(
                    stamped.user_id,
                    stamped.id,
                    stamped.to_record(),
                    self.cache_ttl_seconds,
                    int(stamped.timestamp.timestamp() * 1000),
                )
            except Exception as exc:
                logger.warning(
                    "audit_cache_write_failed",
                    action=stamped.action,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return stamped

    def submit(self, event: AuditEvent) -> Optional[asyncio.Task]:
        """Schedule ``record`` without awaiting it.

        Once ``max_pending`` writes are in flight (a stalled durable store)
        further events are logged and dropped instead of queued.
        """
        if len(self._pending) >= self.max_pending:
            logger.error(
                "audit_backlog_full",
                pending=len(self._pending),
                action=event.action,
                platform=event.platform,
                success=event.success,
            )
            return None
        task = asyncio.create_task(self.record(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every submitted event to finish writing."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
