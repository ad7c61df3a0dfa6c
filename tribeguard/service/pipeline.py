"""Ordered request guard stages and the runner that executes them.

Every guarded route class maps to a list of stage callables. A stage receives
the immutable request context and the pipeline (which carries the injected
stores and services) and returns ``Continue`` or ``Reject``; stages may also
raise a ``ServiceError``, which the runner treats as a rejection. The first
rejection short-circuits the remaining stages.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from tribeguard.config import Settings, validate_callback_url
from tribeguard.logging import get_logger
from tribeguard.service import headers as security_headers
from tribeguard.service import tokens
from tribeguard.service.audit import AuditPipeline
from tribeguard.service.errors import (
    CsrfTokenInvalid,
    CsrfTokenMissing,
    ForbiddenError,
    OAuthOperationFailed,
    ServerError,
    ServiceError,
    ValidationError,
)
from tribeguard.service.oauth_state import StateIssuer
from tribeguard.service.rate_limit import RateLimiter
from tribeguard.service.replay import ReplayGuard
from tribeguard.service.session_secrets import SecretManager
from tribeguard.storage.errors import StoreUnavailable
from tribeguard.storage.models import AuditEvent

logger = get_logger(__name__)

OAUTH_ROUTE_ACTIONS = {
    "oauth_initiate": "initiate",
    "oauth_callback": "callback",
    "oauth_refresh": "refresh",
}


@dataclass(frozen=True)
class GuardContext:
    """Per-request facts the stages decide on; built once, never mutated."""

    route_class: str
    method: str
    path: str
    scheme: str = "http"
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    body: Mapping[str, Any] = field(default_factory=dict)
    ip: str = "unknown"
    user_agent: str = "unknown"
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    session_id: Optional[str] = None
    session_is_new: bool = False
    request_id: Optional[str] = None

    @property
    def platform(self) -> Optional[str]:
        value = self.body.get("platform")
        return value if isinstance(value, str) and value else None

    @property
    def state(self) -> Optional[str]:
        value = self.body.get("state")
        return value if isinstance(value, str) and value else None

    @property
    def oauth_action(self) -> Optional[str]:
        return OAUTH_ROUTE_ACTIONS.get(self.route_class)


@dataclass(frozen=True)
class Continue:
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Reject:
    error: ServiceError


StageResult = Union[Continue, Reject]
Stage = Callable[[GuardContext, "GuardPipeline"], Awaitable[StageResult]]


@dataclass
class GuardOutcome:
    context: GuardContext
    headers: Dict[str, str]
    rejection: Optional[ServiceError] = None
    stage: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None


@dataclass(frozen=True)
class CsrfProfile:
    name: str
    ignore_methods: frozenset
    require_double_submit: bool = False
    max_age_ms: Optional[int] = None


def csrf_profiles(settings: Settings) -> Dict[str, CsrfProfile]:
    """Profiles keyed by route class.

    ``csrf_max_age_ms`` bounds the token age of every profile; the enhanced
    profile may only tighten it.
    """
    max_age_ms = settings.csrf_max_age_ms
    return {
        "csrf": CsrfProfile(
            "standard", frozenset(settings.csrf_ignore_methods), max_age_ms=max_age_ms
        ),
        "csrf_enhanced": CsrfProfile(
            "enhanced",
            frozenset(settings.csrf_ignore_methods),
            require_double_submit=settings.csrf_require_double_submit,
            max_age_ms=min(settings.csrf_enhanced_max_age_ms, max_age_ms),
        ),
        "csrf_api": CsrfProfile(
            "api",
            frozenset({"GET", "HEAD", "OPTIONS", "POST", "PUT", "DELETE"}),
            max_age_ms=max_age_ms,
        ),
    }


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


def _is_bearer_api_request(ctx: GuardContext, guard: "GuardPipeline") -> bool:
    authorization = ctx.headers.get("authorization") or ""
    if not authorization.lower().startswith("bearer "):
        return False
    if not ctx.path.startswith(guard.settings.api_prefix):
        return False
    # A session cookie means a browser may be riding along; keep checking
    return guard.settings.session_cookie_name not in ctx.cookies


async def csrf_protection(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    settings = guard.settings
    profile = guard.csrf_profiles[ctx.route_class]
    if ctx.method.upper() in profile.ignore_methods:
        return Continue()
    if _is_bearer_api_request(ctx, guard):
        logger.debug("csrf_bearer_bypass", path=ctx.path)
        return Continue()

    header_token = ctx.headers.get(settings.csrf_header_name.lower())
    body_token = ctx.body.get(settings.csrf_body_field)
    if not isinstance(body_token, str):
        body_token = None
    token = header_token or body_token
    if not token:
        return Reject(CsrfTokenMissing())

    secret = await guard.secrets.get_or_create(ctx.session_id or "")
    if not tokens.verify(token, secret):
        return Reject(CsrfTokenInvalid())

    if profile.require_double_submit:
        if not header_token or not body_token or header_token != body_token:
            return Reject(CsrfTokenInvalid("Double-submit CSRF validation failed"))

    if profile.max_age_ms:
        raw_timestamp = ctx.headers.get(settings.csrf_timestamp_header.lower())
        if raw_timestamp is not None:
            try:
                issued_ms = int(raw_timestamp)
            except ValueError:
                return Reject(CsrfTokenInvalid("CSRF token expired"))
            if guard.now_ms() - issued_ms > profile.max_age_ms:
                return Reject(CsrfTokenInvalid("CSRF token expired"))
    return Continue()


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


async def oauth_security_headers(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    settings = guard.settings
    applied = security_headers.apply(
        "oauth",
        {},
        security_headers.HeaderContext(
            production=settings.is_production,
            enable_hsts=settings.enable_hsts,
            method=ctx.method,
        ),
    )
    return Continue(headers=dict(applied))


async def validate_platform(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    allowed = list(guard.settings.oauth_allowed_platforms)
    if ctx.platform is None or ctx.platform not in allowed:
        return Reject(
            ValidationError(
                "Invalid or missing platform parameter",
                detail={"allowedPlatforms": allowed},
            )
        )
    return Continue()


async def validate_oauth_callback_url(
    ctx: GuardContext, guard: "GuardPipeline"
) -> StageResult:
    settings = guard.settings
    platform = ctx.platform or ""
    _, _, redirect_uri = settings.platform_credentials(platform)
    if not redirect_uri:
        return Reject(
            ValidationError("OAuth redirect URI not configured", detail={"platform": platform})
        )
    if not validate_callback_url(
        redirect_uri,
        settings.allowed_callback_domains(),
        production=settings.is_production,
    ):
        logger.error(
            "oauth_callback_url_invalid", platform=platform, redirect_uri=redirect_uri
        )
        return Reject(
            ValidationError(
                "Invalid OAuth callback URL configuration", detail={"platform": platform}
            )
        )
    return Continue()


async def verify_oauth_state(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    if ctx.state is None:
        return Reject(ValidationError("OAuth state parameter is required"))
    guard.states.verify(
        ctx.state, user_id=ctx.user_id, organization_id=ctx.organization_id
    )
    return Continue()


async def protect_oauth_state(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    await guard.replay.consume(ctx.state)
    return Continue()


async def production_checks(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    settings = guard.settings
    if not settings.is_production:
        return Continue()
    forwarded_proto = (ctx.headers.get("x-forwarded-proto") or "").lower()
    if forwarded_proto != "https" and ctx.scheme != "https":
        return Reject(ValidationError("HTTPS required in production"))
    origin = ctx.headers.get("origin")
    if origin and origin not in settings.cors_allow_origins:
        logger.warning("oauth_unauthorized_origin", origin=origin, path=ctx.path)
        return Reject(ForbiddenError("Unauthorized origin"))
    return Continue()


async def rate_limit(ctx: GuardContext, guard: "GuardPipeline") -> StageResult:
    limiter = guard.limiters[OAUTH_ROUTE_ACTIONS[ctx.route_class]]
    decision = await limiter.check(
        user_id=ctx.user_id, ip=ctx.ip, path=ctx.path, headers=ctx.headers
    )
    return Continue(headers=decision.headers)


ROUTE_STAGES: Dict[str, List[Stage]] = {
    "csrf": [csrf_protection],
    "csrf_enhanced": [csrf_protection],
    "csrf_api": [csrf_protection],
    "oauth_initiate": [
        oauth_security_headers,
        validate_platform,
        validate_oauth_callback_url,
        production_checks,
        rate_limit,
    ],
    "oauth_callback": [
        oauth_security_headers,
        validate_platform,
        verify_oauth_state,
        protect_oauth_state,
        production_checks,
        rate_limit,
    ],
    "oauth_refresh": [oauth_security_headers, production_checks, rate_limit],
}


class GuardPipeline:
    """Runs the stage list of a route class against one request."""

    def __init__(
        self,
        settings: Settings,
        *,
        secrets: SecretManager,
        replay: ReplayGuard,
        states: StateIssuer,
        limiters: Dict[str, RateLimiter],
        audit: AuditPipeline,
        stages: Optional[Dict[str, List[Stage]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.secrets = secrets
        self.replay = replay
        self.states = states
        self.limiters = limiters
        self.audit = audit
        self.stages = stages or ROUTE_STAGES
        self.csrf_profiles = csrf_profiles(settings)
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def stages_for(self, route_class: str) -> List[Stage]:
        try:
            return self.stages[route_class]
        except KeyError:
            raise ValueError(f"unknown route class: {route_class}") from None

    async def run(self, ctx: GuardContext) -> GuardOutcome:
        headers: Dict[str, str] = {}
        for stage in self.stages_for(ctx.route_class):
            try:
                result = await stage(ctx, self)
            except ServiceError as exc:
                result = Reject(exc)
            except StoreUnavailable as exc:
                result = Reject(self._internal_error(ctx, stage.__name__, exc))
            if isinstance(result, Reject):
                return self._reject(ctx, stage.__name__, result.error, headers)
            headers.update(result.headers)
        return GuardOutcome(context=ctx, headers=headers)

    def _internal_error(
        self, ctx: GuardContext, stage_name: str, exc: StoreUnavailable
    ) -> ServerError:
        logger.error(
            "guard_stage_failed",
            stage=stage_name,
            route_class=ctx.route_class,
            error=exc.message,
            detail=exc.detail,
        )
        expose = not self.settings.is_production
        if ctx.oauth_action:
            return OAuthOperationFailed(
                exc.message, request_id=ctx.request_id, expose=expose
            )
        return ServerError(exc.message, request_id=ctx.request_id, expose=expose)

    def _reject(
        self,
        ctx: GuardContext,
        stage_name: str,
        error: ServiceError,
        headers: Dict[str, str],
    ) -> GuardOutcome:
        merged = {**headers, **error.headers}
        error.headers = merged
        # Logged once, as service_error, by the HTTP error handler
        error.detail = {
            **error.detail,
            "stage": stage_name,
            "route_class": ctx.route_class,
        }
        if ctx.oauth_action:
            self.audit.submit(
                AuditEvent(
                    user_id=ctx.user_id or "unknown",
                    organization_id=ctx.organization_id or "unknown",
                    platform=ctx.platform or "unknown",
                    action="error" if error.status_code >= 500 else ctx.oauth_action,
                    success=False,
                    ip=ctx.ip,
                    user_agent=ctx.user_agent,
                    error=error.message,
                    metadata={
                        "stage": stage_name,
                        "status_code": error.status_code,
                        "request_id": ctx.request_id,
                    },
                )
            )
        return GuardOutcome(
            context=ctx, headers=merged, rejection=error, stage=stage_name
        )
