from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_STRING_LENGTH = 4096


class CsrfTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    csrf_token: str = Field(..., alias="csrfToken")
    timestamp: str


class ErrorBody(BaseModel):
    """Flat rejection body: ``{error, code?, platform?, allowedPlatforms?, requestId?}``."""

    model_config = ConfigDict(populate_by_name=True)

    error: str
    code: Optional[str] = None
    platform: Optional[str] = None
    allowed_platforms: Optional[list[str]] = Field(default=None, alias="allowedPlatforms")
    request_id: Optional[str] = Field(default=None, alias="requestId")


class FormSubmitResponse(BaseModel):
    status: str = "ok"
    received: Dict[str, Any] = Field(default_factory=dict)


class OAuthInitiateRequest(BaseModel):
    # Platform membership is enforced by the guard so the rejection body can
    # list the allowed platforms
    platform: Optional[str] = Field(default=None, max_length=32)
    scopes: Optional[list[str]] = None


class OAuthCallbackRequest(BaseModel):
    platform: Optional[str] = Field(default=None, max_length=32)
    state: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    code: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)


class OAuthRefreshRequest(BaseModel):
    platform: Optional[str] = Field(default=None, max_length=32)
    account_id: Optional[str] = Field(default=None, alias="accountId", max_length=128)

    model_config = ConfigDict(populate_by_name=True)


class OAuthAckResponse(BaseModel):
    """Acknowledgement returned once a guarded OAuth request is admitted.

    Token exchange with the provider happens downstream of this service.
    """

    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    action: str
    platform: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")
    # Signed state issued on initiate; the callback must echo it back
    state: Optional[str] = None
