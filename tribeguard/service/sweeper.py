from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from tribeguard.logging import get_logger
from tribeguard.storage.common import AuditStore, GuardStore
from tribeguard.storage.models import SweepReport
from tribeguard.storage.redis_cache import KEY_PREFIX

logger = get_logger(__name__)

DEFAULT_SWEEP_PREFIXES = (KEY_PREFIX["oauth_used_state"], KEY_PREFIX["oauth_state"])


class RetentionSweeper:
    """Periodically deletes expired audit records and lapsed replay keys.

    ``run_once`` never raises; each half of the sweep reports its own failure
    and the loop keeps its schedule.
    """

    def __init__(
        self,
        durable: AuditStore,
        cache: GuardStore,
        *,
        retention_days: int = 30,
        batch_size: int = 100,
        interval_seconds: int = 60 * 60,
        prefixes: Sequence[str] = DEFAULT_SWEEP_PREFIXES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.durable = durable
        self.cache = cache
        self.retention_days = retention_days
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.prefixes = tuple(prefixes)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepReport:
        errors: List[str] = []
        audit_deleted = 0
        keys_removed = 0
        cutoff = datetime.fromtimestamp(self._clock(), tz=timezone.utc) - timedelta(
            days=self.retention_days
        )
        try:
            audit_deleted = await asyncio.to_thread(
                self.durable.delete_older_than, cutoff, self.batch_size
            )
        except Exception as exc:
            errors.append(f"audit: {exc}")
            logger.error(
                "audit_retention_sweep_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        try:
            keys_removed = await self.cache.purge_lapsed_keys(self.prefixes)
        except Exception as exc:
            errors.append(f"cache: {exc}")
            logger.error(
                "state_key_sweep_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

        report = SweepReport(
            audit_deleted=audit_deleted,
            keys_removed=keys_removed,
            errors=tuple(errors),
        )
        self.last_report = report
        if audit_deleted or keys_removed:
            logger.info(
                "retention_sweep_completed",
                audit_deleted=audit_deleted,
                keys_removed=keys_removed,
            )
        return report

    async def _run_loop(self) -> None:
        try:
            while True:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("retention_sweeper_cancelled")
            raise

    async def start(self) -> None:
        if self.running:
            logger.warning("retention_sweeper_already_running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("retention_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("retention_sweeper_stopped")
