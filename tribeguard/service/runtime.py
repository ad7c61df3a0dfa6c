from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tribeguard.config import get_settings, reset_settings_cache
from tribeguard.logging import get_logger
from tribeguard.service.audit import AuditPipeline
from tribeguard.service.oauth_state import StateIssuer
from tribeguard.service.pipeline import GuardPipeline
from tribeguard.service.rate_limit import RateLimiter, oauth_limiter_configs
from tribeguard.service.replay import ReplayGuard
from tribeguard.service.session_secrets import SecretManager
from tribeguard.service.sweeper import RetentionSweeper
from tribeguard.service.tokens import new_secret
from tribeguard.storage.memory import MemoryAuditStore, MemoryCache
from tribeguard.storage.postgres import PostgresAuditStore
from tribeguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the stores and guard services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.audit_store = (
                MemoryAuditStore()
                if self.settings.use_memory_store
                else PostgresAuditStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for CSRF secrets, OAuth replay protection and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            if self.settings.is_production and not self.settings.test_mode:
                raise RuntimeError(
                    "in-memory store fallback is not allowed in production"
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; CSRF secrets, replay records "
                    "and rate limit counters are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.secrets = SecretManager(
            self.cache, ttl_seconds=self.settings.session_ttl_seconds
        )
        self.replay = ReplayGuard(
            self.cache, ttl_seconds=self.settings.oauth_state_ttl_seconds
        )
        state_secret = self.settings.oauth_state_secret
        if not state_secret:
            logger.warning(
                "oauth_state_secret_generated",
                message="OAUTH_STATE_SECRET unset; issued OAuth states are only valid in this process",
            )
            state_secret = new_secret()
        self.states = StateIssuer(
            state_secret, max_age_ms=self.settings.oauth_state_max_age_ms
        )
        self.limiters = {
            action: RateLimiter(
                self.cache,
                config,
                production=self.settings.is_production,
                debug_bypass=self.settings.rate_limit_debug_bypass,
                debug_paths=self.settings.rate_limit_debug_paths,
                internal_header=self.settings.internal_request_header,
            )
            for action, config in oauth_limiter_configs(self.settings).items()
        }
        self.audit = AuditPipeline(
            self.audit_store,
            self.cache,
            environment=self.settings.environment.value,
            cache_ttl_seconds=self.settings.audit_cache_ttl_seconds,
            max_pending=self.settings.audit_max_pending,
        )
        self.guard = GuardPipeline(
            self.settings,
            secrets=self.secrets,
            replay=self.replay,
            states=self.states,
            limiters=self.limiters,
            audit=self.audit,
        )
        self.sweeper = RetentionSweeper(
            self.audit_store,
            self.cache,
            retention_days=self.settings.audit_retention_days,
            batch_size=self.settings.sweep_batch_size,
            interval_seconds=self.settings.sweep_interval_seconds,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            audit_store=type(self.audit_store).__name__,
            rate_limit_debug_bypass=self.settings.rate_limit_debug_bypass,
        )

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.audit.drain()
        await self.cache.close()
        self.audit_store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
