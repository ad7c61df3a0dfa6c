from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Mapping, Optional

from tribeguard.config import Settings
from tribeguard.logging import get_logger, mask_identifier
from tribeguard.service.errors import RateLimitedError
from tribeguard.storage.common import GuardStore
from tribeguard.storage.redis_cache import rate_limit_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class LimiterConfig:
    action: str
    window_ms: int
    max: int
    message: str


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    skipped: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


def oauth_limiter_configs(settings: Settings) -> Dict[str, LimiterConfig]:
    """Per-action limits for the OAuth lifecycle."""
    return {
        "initiate": LimiterConfig(
            "initiate",
            settings.oauth_initiate_window_ms,
            settings.oauth_initiate_max,
            "Too many OAuth initiation attempts",
        ),
        "callback": LimiterConfig(
            "callback",
            settings.oauth_callback_window_ms,
            settings.oauth_callback_max,
            "Too many OAuth callback attempts",
        ),
        "refresh": LimiterConfig(
            "refresh",
            settings.oauth_refresh_window_ms,
            settings.oauth_refresh_max,
            "Too many token refresh attempts",
        ),
    }


def identity_subject(action: str, user_id: Optional[str], ip: Optional[str]) -> str:
    if user_id:
        return f"oauth_{action}_user_{user_id}"
    return f"oauth_{action}_ip_{ip or 'unknown'}"


def _standard_headers(limit: int, remaining: int, reset_seconds: int) -> Dict[str, str]:
    return {
        "RateLimit-Limit": str(limit),
        "RateLimit-Remaining": str(max(0, remaining)),
        "RateLimit-Reset": str(reset_seconds),
    }


class RateLimiter:
    """Fixed-window limiter for one OAuth action.

    Admission and increment are one atomic store call. Fixed windows may
    admit up to twice ``max`` across a window boundary.
    """

    def __init__(
        self,
        store: GuardStore,
        config: LimiterConfig,
        *,
        production: bool = False,
        debug_bypass: bool = False,
        debug_paths: Iterable[str] = ("/debug/",),
        internal_header: str = "x-internal-request",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if config.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.store = store
        self.config = config
        self.production = production
        self.debug_bypass = debug_bypass
        self.debug_paths = tuple(debug_paths)
        self.internal_header = internal_header.lower()
        self._clock = clock

    def skip_reason(self, path: str, headers: Mapping[str, str]) -> Optional[str]:
        """Return why this request skips limiting, or None to enforce."""
        if (
            not self.production
            and (headers.get(self.internal_header) or "").lower() == "true"
        ):
            return "internal_request"
        if any(prefix in path for prefix in self.debug_paths):
            return "debug_path"
        if self.debug_bypass:
            return "debug_bypass"
        return None

    async def hit(self, subject: str) -> RateDecision:
        now_ms = int(self._clock() * 1000)
        window = await self.store.incr_rate_window(
            rate_limit_key(self.config.action, subject), self.config.window_ms, now_ms
        )
        allowed = window.count <= self.config.max
        remaining = self.config.max - window.count
        reset_seconds = max(1, math.ceil(window.reset_ms / 1000))
        return RateDecision(
            allowed=allowed,
            limit=self.config.max,
            remaining=max(0, remaining),
            reset_seconds=reset_seconds,
            headers=_standard_headers(self.config.max, remaining, reset_seconds),
        )

    async def check(
        self,
        *,
        user_id: Optional[str],
        ip: Optional[str],
        path: str = "",
        headers: Optional[Mapping[str, str]] = None,
    ) -> RateDecision:
        """Admit one request or raise ``RateLimitedError`` carrying the headers."""
        reason = self.skip_reason(path, headers or {})
        if reason:
            logger.warning(
                "rate_limit_skipped",
                action=self.config.action,
                reason=reason,
                path=path,
                ip=ip,
            )
            return RateDecision(
                allowed=True,
                limit=self.config.max,
                remaining=self.config.max,
                reset_seconds=0,
                skipped=reason,
            )

        subject = identity_subject(self.config.action, user_id, ip)
        decision = await self.hit(subject)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                action=self.config.action,
                subject=mask_identifier(subject, keep=24),
                limit=decision.limit,
                reset_seconds=decision.reset_seconds,
            )
            raise RateLimitedError(
                self.config.message,
                headers=decision.headers,
                detail={"action": self.config.action},
            )
        return decision
