from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for guard rejections mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``.
    ``to_body`` renders the JSON body clients see; ``detail`` is logged but
    only merged into the body by subclasses that expose it.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = dict(headers or {})

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        for key in ("platform", "allowedPlatforms"):
            if key in self.detail:
                body[key] = self.detail[key]
        return body


class ReplayDetected(ValidationError):
    """OAuth state token was already consumed (400)."""
    error_code = "oauth_state_replay"

    def __init__(self, message: str = "OAuth state parameter has already been used", **kwargs):
        super().__init__(message, **kwargs)


class CsrfError(ServiceError):
    """CSRF token missing or rejected (401)."""
    status_code = 401
    error_code = "CSRF_TOKEN_INVALID"

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.error_code}


class CsrfTokenMissing(CsrfError):
    error_code = "CSRF_TOKEN_MISSING"

    def __init__(self, message: str = "CSRF token missing", **kwargs):
        super().__init__(message, **kwargs)


class CsrfTokenInvalid(CsrfError):
    error_code = "CSRF_TOKEN_INVALID"

    def __init__(self, message: str = "Invalid CSRF token", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500).

    ``public_message`` replaces the detailed message in production responses.
    """
    status_code = 500
    error_code = "server_error"
    public_message = "Internal server error"

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        expose: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.request_id = request_id
        self.expose = expose

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": self.message if self.expose else self.public_message
        }
        if self.request_id:
            body["requestId"] = self.request_id
        return body


class OAuthOperationFailed(ServerError):
    error_code = "oauth_operation_failed"
    public_message = "OAuth operation failed"


class CsrfGenerationError(ServerError):
    error_code = "CSRF_GENERATION_ERROR"
    public_message = "Failed to generate CSRF token"

    def __init__(self, message: str = "Failed to generate CSRF token", **kwargs):
        kwargs.setdefault("expose", False)
        super().__init__(message, **kwargs)

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.public_message, "code": self.error_code}


__all__ = [
    "ServiceError",
    "ValidationError",
    "ReplayDetected",
    "CsrfError",
    "CsrfTokenMissing",
    "CsrfTokenInvalid",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "OAuthOperationFailed",
    "CsrfGenerationError",
]
