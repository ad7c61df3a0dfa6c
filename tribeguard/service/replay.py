from __future__ import annotations

import time
from typing import Callable, Optional

from tribeguard.logging import get_logger
from tribeguard.service.errors import ReplayDetected, ValidationError
from tribeguard.storage.common import GuardStore

logger = get_logger(__name__)


class ReplayGuard:
    """One-time consumption of OAuth state tokens."""

    def __init__(
        self,
        store: GuardStore,
        *,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def consume(self, state: Optional[str]) -> None:
        """Mark ``state`` consumed or raise.

        Raises:
            ValidationError: state is missing
            ReplayDetected: state was consumed before, by this or a concurrent request
        """
        if not state:
            raise ValidationError("OAuth state parameter is required")
        consumed_at_ms = int(self._clock() * 1000)
        if not await self.store.mark_oauth_state_used(
            state, consumed_at_ms, self.ttl_seconds
        ):
            logger.warning("oauth_state_replay_detected", state=state)
            raise ReplayDetected()
