from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tribeguard.api.error_handling import register_exception_handlers
from tribeguard.api.routes import router
from tribeguard.config import Settings, enforce_startup_config, get_settings
from tribeguard.logging import get_logger, set_correlation_id
from tribeguard.service import headers as security_headers

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration, then run the retention sweeper for the app's lifetime."""
    from tribeguard.service.runtime import get_runtime

    enforce_startup_config(get_settings())
    runtime = get_runtime()
    await runtime.sweeper.start()

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tribeguard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> list[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://localhost:5173"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-CSRF-Token",
        "X-CSRF-Timestamp",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-CSRF-Token",
        "RateLimit-Limit",
        "RateLimit-Remaining",
        "RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def set_session_cookie(request: Request, call_next):
    """Attach the session cookie minted while guarding or issuing a CSRF token."""
    response = await call_next(request)
    session_id = getattr(request.state, "new_session_id", None)
    if session_id:
        settings = get_settings()
        response.set_cookie(
            settings.session_cookie_name,
            session_id,
            max_age=settings.session_ttl_seconds,
            httponly=True,
            secure=settings.is_production,
            samesite="lax",
            path="/",
        )
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    settings = get_settings()
    route_class = security_headers.route_class_for_path(
        request.url.path, api_prefix=settings.api_prefix
    )
    composed = security_headers.apply(
        route_class,
        {},
        security_headers.HeaderContext(
            production=settings.is_production,
            enable_hsts=settings.enable_hsts,
            method=request.method,
            websocket_upgrade=(request.headers.get("upgrade") or "").lower() == "websocket",
        ),
    )
    for name, value in composed.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind a correlation id for logging and echo it in ``X-Request-ID``."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report shared store and audit store reachability."""
    from tribeguard.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        redis_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_redis_failed", error=str(exc))
        redis_ok = False
    checks["redis"] = {
        "status": "healthy" if redis_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.audit_store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        audit_ok = True
    except Exception as exc:
        logger.error("health_check_audit_store_failed", error=str(exc))
        audit_ok = False
    checks["audit_store"] = {
        "status": "healthy" if audit_ok else "unhealthy",
        "type": type(runtime.audit_store).__name__,
    }

    healthy = redis_ok and audit_ok
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app
