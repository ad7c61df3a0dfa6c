from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Tuple

from fastapi import APIRouter, Depends, Request, Response

from tribeguard.api.schemas import (
    CsrfTokenResponse,
    FormSubmitResponse,
    OAuthAckResponse,
    OAuthCallbackRequest,
    OAuthInitiateRequest,
    OAuthRefreshRequest,
)
from tribeguard.config import Settings
from tribeguard.logging import get_correlation_id, get_logger
from tribeguard.service import tokens
from tribeguard.service.errors import CsrfGenerationError
from tribeguard.service.pipeline import GuardContext, GuardOutcome
from tribeguard.service.runtime import get_runtime
from tribeguard.storage.errors import StoreUnavailable
from tribeguard.storage.models import AuditEvent

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

_BODYLESS_METHODS = {"GET", "HEAD", "OPTIONS", "DELETE"}


def _resolve_session(request: Request, settings: Settings) -> Tuple[str, bool]:
    """Return the caller's session id, minting one when the cookie is absent."""
    existing = request.cookies.get(settings.session_cookie_name)
    if existing:
        return existing, False
    return uuid.uuid4().hex, True


async def _read_body(request: Request) -> Dict[str, Any]:
    if request.method.upper() in _BODYLESS_METHODS:
        return {}
    content_type = (request.headers.get("content-type") or "").lower()
    try:
        if content_type.startswith("application/json"):
            raw = await request.body()
            if not raw:
                return {}
            parsed = json.loads(raw)
            return parsed if isinstance(parsed, dict) else {}
        if content_type.startswith(
            ("application/x-www-form-urlencoded", "multipart/form-data")
        ):
            form = await request.form()
            return {key: value for key, value in form.items() if isinstance(value, str)}
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("guard_body_unreadable", path=request.url.path, error=str(exc))
    return {}


async def build_guard_context(
    request: Request, settings: Settings, route_class: str
) -> GuardContext:
    session_id, session_is_new = _resolve_session(request, settings)
    headers = {key.lower(): value for key, value in request.headers.items()}
    user_id = organization_id = None
    if settings.trust_identity_headers:
        user_id = headers.get("x-user-id") or None
        organization_id = headers.get("x-organization-id") or None
    return GuardContext(
        route_class=route_class,
        method=request.method.upper(),
        path=request.url.path,
        scheme=request.url.scheme,
        headers=headers,
        cookies=dict(request.cookies),
        body=await _read_body(request),
        ip=request.client.host if request.client else "unknown",
        user_agent=headers.get("user-agent") or "unknown",
        user_id=user_id,
        organization_id=organization_id,
        session_id=session_id,
        session_is_new=session_is_new,
        request_id=get_correlation_id(),
    )


def guard(route_class: str) -> Callable[..., Any]:
    """FastAPI dependency running the guard pipeline for ``route_class``.

    Rejections are raised as ``ServiceError`` and rendered by the registered
    exception handlers. A freshly minted session id is left on
    ``request.state`` so the session middleware sets the cookie on both paths.
    """

    async def _guard(request: Request, response: Response) -> GuardOutcome:
        runtime = get_runtime()
        ctx = await build_guard_context(request, runtime.settings, route_class)
        if ctx.session_is_new and route_class.startswith("csrf"):
            request.state.new_session_id = ctx.session_id
        outcome = await runtime.guard.run(ctx)
        if outcome.rejection is not None:
            raise outcome.rejection
        for name, value in outcome.headers.items():
            response.headers[name] = value
        return outcome

    return _guard


@router.get(
    "/csrf-token",
    response_model=CsrfTokenResponse,
    response_model_by_alias=True,
    tags=["csrf"],
)
async def get_csrf_token(request: Request, response: Response):
    """Issue a CSRF token bound to the caller's session secret.

    The token is also echoed in the ``X-CSRF-Token`` response header.
    """
    runtime = get_runtime()
    session_id, is_new = _resolve_session(request, runtime.settings)
    try:
        secret = await runtime.secrets.get_or_create(session_id)
        token = tokens.generate(secret)
    except (StoreUnavailable, ValueError) as exc:
        logger.error(
            "csrf_token_generation_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise CsrfGenerationError(request_id=get_correlation_id()) from exc
    if is_new:
        request.state.new_session_id = session_id
    response.headers["X-CSRF-Token"] = token
    return CsrfTokenResponse(
        csrf_token=token, timestamp=datetime.now(timezone.utc).isoformat()
    )


def _form_fields(outcome: GuardOutcome) -> Dict[str, Any]:
    body_field = get_runtime().settings.csrf_body_field
    return {key: value for key, value in outcome.context.body.items() if key != body_field}


@router.post("/forms/submit", response_model=FormSubmitResponse, tags=["csrf"])
async def submit_form(outcome: GuardOutcome = Depends(guard("csrf"))):
    return FormSubmitResponse(received=_form_fields(outcome))


@router.post("/account/sensitive", response_model=FormSubmitResponse, tags=["csrf"])
async def sensitive_action(outcome: GuardOutcome = Depends(guard("csrf_enhanced"))):
    """High-value action protected by double-submit and token age checks."""
    return FormSubmitResponse(received=_form_fields(outcome))


def _record_completion(outcome: GuardOutcome, action: str, platform: str | None) -> None:
    ctx = outcome.context
    get_runtime().audit.submit(
        AuditEvent(
            user_id=ctx.user_id or "unknown",
            organization_id=ctx.organization_id or "unknown",
            platform=platform or "unknown",
            action=action,
            success=True,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            metadata={"request_id": ctx.request_id},
        )
    )


def _ack(
    outcome: GuardOutcome,
    action: str,
    platform: str | None,
    state: str | None = None,
) -> OAuthAckResponse:
    _record_completion(outcome, action, platform)
    return OAuthAckResponse(
        action=action,
        platform=platform,
        request_id=outcome.context.request_id,
        state=state,
    )


@router.post(
    "/oauth/initiate",
    response_model=OAuthAckResponse,
    response_model_by_alias=True,
    tags=["oauth"],
)
async def oauth_initiate(
    body: OAuthInitiateRequest,
    outcome: GuardOutcome = Depends(guard("oauth_initiate")),
):
    ctx = outcome.context
    state = get_runtime().states.issue(ctx.user_id, ctx.organization_id)
    return _ack(outcome, "initiate", body.platform, state)


@router.post(
    "/oauth/callback",
    response_model=OAuthAckResponse,
    response_model_by_alias=True,
    tags=["oauth"],
)
async def oauth_callback(
    body: OAuthCallbackRequest,
    outcome: GuardOutcome = Depends(guard("oauth_callback")),
):
    return _ack(outcome, "callback", body.platform)


@router.post(
    "/oauth/refresh",
    response_model=OAuthAckResponse,
    response_model_by_alias=True,
    tags=["oauth"],
)
async def oauth_refresh(
    body: OAuthRefreshRequest,
    outcome: GuardOutcome = Depends(guard("oauth_refresh")),
):
    return _ack(outcome, "refresh", body.platform)
