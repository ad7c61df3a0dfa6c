"""Security response headers, composed per route class.

A route class maps to an ordered list of header steps. Steps write into a
mutable header mapping and later steps override earlier ones, so a class can
start from the shared base policy and tighten it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, MutableMapping, Optional

ROUTE_CLASSES = ("api", "upload", "websocket", "public", "oauth")

DEFAULT_CSP = "; ".join(
    [
        "default-src 'self'",
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
        "script-src 'self'",
        "img-src 'self' data: https:",
        "font-src 'self' https://fonts.gstatic.com data:",
        "connect-src 'self' wss:",
        "object-src 'none'",
        "frame-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
    ]
)

OAUTH_CSP = "; ".join(
    [
        "default-src 'self'",
        "connect-src 'self' https://api.twitter.com https://www.linkedin.com "
        "https://graph.facebook.com https://api.instagram.com",
        "frame-ancestors 'none'",
        "form-action 'self'",
        "base-uri 'self'",
    ]
)

NO_STORE = "no-store, no-cache, must-revalidate, proxy-revalidate"

PERMISSIONS_POLICY = (
    "camera=(), microphone=(), geolocation=(), payment=(), usb=(), "
    "magnetometer=(), gyroscope=(), accelerometer=()"
)


@dataclass(frozen=True)
class HeaderContext:
    production: bool = False
    enable_hsts: bool = True
    method: str = "GET"
    websocket_upgrade: bool = False


HeaderStep = Callable[[MutableMapping[str, str], HeaderContext], None]


def content_security_policy(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Content-Security-Policy"] = DEFAULT_CSP


def frame_options(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["X-Frame-Options"] = "DENY"


def no_sniff(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["X-Content-Type-Options"] = "nosniff"


def referrer_policy(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Referrer-Policy"] = "strict-origin-when-cross-origin"


def cross_origin_policies(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Cross-Origin-Opener-Policy"] = "same-origin"
    headers["Cross-Origin-Resource-Policy"] = "cross-origin"


def no_cache(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Cache-Control"] = NO_STORE
    headers["Pragma"] = "no-cache"
    headers["Expires"] = "0"


def permissions_policy(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Permissions-Policy"] = PERMISSIONS_POLICY


def environment_headers(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    if ctx.production:
        if ctx.enable_hsts:
            headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )
        headers["Expect-CT"] = "max-age=86400, enforce"
    else:
        headers["X-Development-Mode"] = "true"


def api_headers(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    if ctx.method.upper() == "OPTIONS":
        headers["Access-Control-Max-Age"] = "86400"


def upload_headers(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Content-Security-Policy"] = "default-src 'none'"


def websocket_headers(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    if ctx.websocket_upgrade:
        headers["X-WebSocket-Security"] = "enabled"
        headers["X-Frame-Options"] = "DENY"


def oauth_headers(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    headers["Content-Security-Policy"] = OAUTH_CSP


_BASE: List[HeaderStep] = [
    content_security_policy,
    frame_options,
    no_sniff,
    referrer_policy,
    cross_origin_policies,
    no_cache,
    permissions_policy,
    environment_headers,
]


def public_hsts(headers: MutableMapping[str, str], ctx: HeaderContext) -> None:
    if ctx.production and ctx.enable_hsts:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"


_COMPOSITIONS: Dict[str, List[HeaderStep]] = {
    "api": [*_BASE, api_headers],
    "upload": [*_BASE, upload_headers],
    "websocket": [*_BASE, websocket_headers],
    # Public content keeps the hardening headers but no CSP
    "public": [
        frame_options,
        no_sniff,
        referrer_policy,
        no_cache,
        permissions_policy,
        public_hsts,
    ],
    "oauth": [
        frame_options,
        no_sniff,
        referrer_policy,
        no_cache,
        environment_headers,
        oauth_headers,
    ],
}


def compose(route_class: str) -> List[HeaderStep]:
    try:
        return list(_COMPOSITIONS[route_class])
    except KeyError:
        raise ValueError(f"unknown route class: {route_class}") from None


def apply(
    route_class: str,
    headers: Optional[MutableMapping[str, str]] = None,
    ctx: Optional[HeaderContext] = None,
) -> MutableMapping[str, str]:
    target: MutableMapping[str, str] = headers if headers is not None else {}
    context = ctx or HeaderContext()
    for step in compose(route_class):
        step(target, context)
    return target


def route_class_for_path(path: str, *, api_prefix: str = "/api/") -> str:
    """Pick the header composition for a request path."""
    if "/oauth/" in path:
        return "oauth"
    if path.startswith("/ws") or "/ws/" in path:
        return "websocket"
    if "/upload" in path:
        return "upload"
    if path.startswith(api_prefix):
        return "api"
    return "public"
