from __future__ import annotations

import os
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tribeguard.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments recognised by the guard."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


# Platforms whose OAuth flows pass through the guard
OAUTH_PLATFORMS = ("twitter", "linkedin", "facebook", "instagram")

# Substrings that mark a credential as a placeholder rather than a real secret
DEMO_CREDENTIAL_PATTERNS = ("demo_", "test_", "example_", "your-", "placeholder")


class ConfigurationError(RuntimeError):
    """Raised when startup configuration is invalid."""

    def __init__(self, errors: list[str]):
        super().__init__("OAuth configuration errors:\n" + "\n".join(errors))
        self.errors = errors


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the request guard."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/tribeguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep audit records in process memory instead of Postgres",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    cors_allow_origins: list[str] = env_field([], "CORS_ORIGIN")
    trust_identity_headers: bool = env_field(
        False,
        "TRUST_IDENTITY_HEADERS",
        description="Accept X-User-Id / X-Organization-Id from an authenticating gateway",
    )

    # Sessions
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    session_ttl_seconds: int = env_field(24 * 60 * 60, "SESSION_TTL_SECONDS")

    # CSRF
    api_prefix: str = env_field("/api/", "API_PREFIX")
    csrf_ignore_methods: list[str] = env_field(
        ["GET", "HEAD", "OPTIONS"], "CSRF_IGNORE_METHODS"
    )
    csrf_header_name: str = env_field("x-csrf-token", "CSRF_HEADER_NAME")
    csrf_body_field: str = env_field("_csrf", "CSRF_BODY_FIELD")
    csrf_timestamp_header: str = env_field("x-csrf-timestamp", "CSRF_TIMESTAMP_HEADER")
    csrf_require_double_submit: bool = env_field(True, "CSRF_REQUIRE_DOUBLE_SUBMIT")
    csrf_max_age_ms: int = env_field(60 * 60 * 1000, "CSRF_MAX_AGE_MS")
    csrf_enhanced_max_age_ms: int = env_field(30 * 60 * 1000, "CSRF_ENHANCED_MAX_AGE_MS")

    # OAuth
    oauth_allowed_platforms: list[str] = env_field(
        list(OAUTH_PLATFORMS), "OAUTH_ALLOWED_PLATFORMS"
    )
    oauth_allowed_domains: list[str] = env_field([], "OAUTH_ALLOWED_DOMAINS")
    oauth_state_ttl_seconds: int = env_field(60 * 60, "OAUTH_STATE_TTL_SECONDS")
    oauth_state_secret: str | None = env_field(
        None,
        "OAUTH_STATE_SECRET",
        description="HMAC key for issued OAuth state values; required in production",
    )
    oauth_state_max_age_ms: int = env_field(10 * 60 * 1000, "OAUTH_STATE_MAX_AGE_MS")
    twitter_client_id: str | None = env_field(None, "TWITTER_CLIENT_ID")
    twitter_client_secret: str | None = env_field(None, "TWITTER_CLIENT_SECRET")
    twitter_redirect_uri: str | None = env_field(None, "TWITTER_REDIRECT_URI")
    linkedin_client_id: str | None = env_field(None, "LINKEDIN_CLIENT_ID")
    linkedin_client_secret: str | None = env_field(None, "LINKEDIN_CLIENT_SECRET")
    linkedin_redirect_uri: str | None = env_field(None, "LINKEDIN_REDIRECT_URI")
    facebook_client_id: str | None = env_field(None, "FACEBOOK_APP_ID")
    facebook_client_secret: str | None = env_field(None, "FACEBOOK_APP_SECRET")
    facebook_redirect_uri: str | None = env_field(None, "FACEBOOK_REDIRECT_URI")
    instagram_client_id: str | None = env_field(None, "INSTAGRAM_CLIENT_ID")
    instagram_client_secret: str | None = env_field(None, "INSTAGRAM_CLIENT_SECRET")
    instagram_redirect_uri: str | None = env_field(None, "INSTAGRAM_REDIRECT_URI")

    # Rate limits (fixed window, milliseconds)
    oauth_initiate_window_ms: int = env_field(15 * 60 * 1000, "OAUTH_INITIATE_WINDOW_MS")
    oauth_initiate_max: int = env_field(50, "OAUTH_INITIATE_MAX")
    oauth_callback_window_ms: int = env_field(5 * 60 * 1000, "OAUTH_CALLBACK_WINDOW_MS")
    oauth_callback_max: int = env_field(10, "OAUTH_CALLBACK_MAX")
    oauth_refresh_window_ms: int = env_field(10 * 60 * 1000, "OAUTH_REFRESH_WINDOW_MS")
    oauth_refresh_max: int = env_field(20, "OAUTH_REFRESH_MAX")
    rate_limit_debug_bypass: bool = env_field(
        False,
        "OAUTH_RATE_LIMIT_DEBUG_BYPASS",
        description="Disables OAuth rate limiting entirely; never enable in production",
    )
    rate_limit_debug_paths: list[str] = env_field(["/debug/"], "RATE_LIMIT_DEBUG_PATHS")
    internal_request_header: str = env_field("x-internal-request", "INTERNAL_REQUEST_HEADER")

    # Audit retention
    audit_cache_ttl_seconds: int = env_field(24 * 60 * 60, "AUDIT_CACHE_TTL_SECONDS")
    audit_max_pending: int = env_field(1000, "AUDIT_MAX_PENDING")
    audit_retention_days: int = env_field(30, "AUDIT_RETENTION_DAYS")
    sweep_interval_seconds: int = env_field(60 * 60, "SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = env_field(100, "SWEEP_BATCH_SIZE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "cors_allow_origins",
        "csrf_ignore_methods",
        "oauth_allowed_platforms",
        "oauth_allowed_domains",
        "rate_limit_debug_paths",
        mode="before",
    )
    @classmethod
    def _split_lists(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("csrf_ignore_methods")
    @classmethod
    def _upper_methods(cls, value: list[str]) -> list[str]:
        return [method.upper() for method in value]

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def platform_credentials(self, platform: str) -> tuple[str | None, str | None, str | None]:
        """Return (client_id, client_secret, redirect_uri) for a platform."""
        return (
            getattr(self, f"{platform}_client_id", None),
            getattr(self, f"{platform}_client_secret", None),
            getattr(self, f"{platform}_redirect_uri", None),
        )

    def allowed_callback_domains(self) -> list[str]:
        domains = list(self.oauth_allowed_domains)
        # Always allow localhost outside production
        if not self.is_production and "localhost" not in domains:
            domains.append("localhost")
        return [domain for domain in domains if domain]


def is_demo_credential(credential: str | None) -> bool:
    if not credential:
        return False
    lowered = credential.lower()
    return any(pattern in lowered for pattern in DEMO_CREDENTIAL_PATTERNS)


def validate_callback_url(url: str, allowed_domains: list[str], *, production: bool) -> bool:
    """Check that an OAuth redirect URI points at an allowed host.

    Production requires https. A host matches when it equals an allowed domain
    or is a subdomain of one.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if not parsed.scheme or not parsed.hostname:
        return False
    if production and parsed.scheme != "https":
        return False
    hostname = parsed.hostname
    for domain in allowed_domains:
        if domain == "localhost" and hostname == "localhost":
            return True
        if hostname == domain or hostname.endswith(f".{domain}"):
            return True
    return False


def validate_oauth_config(settings: Settings) -> None:
    """Validate per-platform OAuth settings.

    Raises:
        ConfigurationError: listing every problem found
    """
    errors: list[str] = []
    production = settings.is_production
    allowed_domains = settings.allowed_callback_domains()
    if production and not settings.oauth_state_secret:
        errors.append("OAUTH_STATE_SECRET is required in production")
    for platform in settings.oauth_allowed_platforms:
        client_id, client_secret, redirect_uri = settings.platform_credentials(platform)
        missing = [
            label
            for label, value in (
                ("client_id", client_id),
                ("client_secret", client_secret),
                ("redirect_uri", redirect_uri),
            )
            if not value
        ]
        if missing:
            errors.append(f"{platform}: Missing credentials ({', '.join(missing)})")
            continue
        if production and is_demo_credential(client_id):
            errors.append(f"{platform}: Demo credentials detected in production")
        if production and not validate_callback_url(
            redirect_uri, allowed_domains, production=True
        ):
            errors.append(f"{platform}: Invalid callback URL for production")
    if errors:
        raise ConfigurationError(errors)


def enforce_startup_config(settings: Settings) -> None:
    """Run startup validation: fatal in production, a warning elsewhere."""
    if settings.rate_limit_debug_bypass:
        log_fn = logger.error if settings.is_production else logger.warning
        log_fn(
            "rate_limit_debug_bypass_enabled",
            environment=settings.environment.value,
            message="OAuth rate limiting is DISABLED by OAUTH_RATE_LIMIT_DEBUG_BYPASS",
        )

    try:
        validate_oauth_config(settings)
    except ConfigurationError as exc:
        if settings.is_production:
            logger.error("oauth_config_invalid", errors=exc.errors, fatal=True)
            raise
        logger.warning("oauth_config_invalid", errors=exc.errors, fatal=False)
        return
    logger.info("oauth_config_validated", platforms=settings.oauth_allowed_platforms)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
