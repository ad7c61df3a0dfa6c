"""Signed OAuth state values bound to the user and organization that started the flow.

A state is ``<user>.<org>.<issued_ms>.<nonce>.<hmac>``. User and organization
are urlsafe base64 without padding, so neither can contain the separator, and
the HMAC covers everything before it. Single use is enforced separately by
``ReplayGuard``; this module only answers "did we issue this, to this caller,
recently".
"""

from __future__ import annotations

import base64
import binascii
import hmac
import time
from typing import Callable

from tribeguard.logging import get_logger, mask_identifier
from tribeguard.service import tokens
from tribeguard.service.errors import ValidationError

logger = get_logger(__name__)

DEFAULT_STATE_MAX_AGE_MS = 10 * 60 * 1000

# Identity recorded for callers that carry no trusted user or organization
UNKNOWN_IDENTITY = "unknown"


def _encode(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode()).decode().rstrip("=")


def _decode(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode()


class StateIssuer:
    def __init__(
        self,
        secret: str,
        *,
        max_age_ms: int = DEFAULT_STATE_MAX_AGE_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("state secret is required")
        self.secret = secret
        self.max_age_ms = max_age_ms
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def issue(self, user_id: str | None, organization_id: str | None) -> str:
        payload = ".".join(
            (
                _encode(user_id or UNKNOWN_IDENTITY),
                _encode(organization_id or UNKNOWN_IDENTITY),
                str(self._now_ms()),
                tokens.new_nonce(),
            )
        )
        return f"{payload}.{tokens.sign(self.secret, payload)}"

    def verify(
        self, state: str, *, user_id: str | None, organization_id: str | None
    ) -> None:
        """Raise ``ValidationError`` unless ``state`` was issued to this caller and is fresh."""
        parts = state.split(".")
        if len(parts) != 5:
            raise self._reject("malformed", state)
        encoded_user, encoded_org, raw_issued, nonce, signature = parts
        payload = ".".join(parts[:4])
        if not nonce or not tokens.signature_matches(self.secret, payload, signature):
            raise self._reject("bad_signature", state)
        try:
            state_user = _decode(encoded_user)
            state_org = _decode(encoded_org)
            issued_ms = int(raw_issued)
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise self._reject("malformed", state) from exc

        same_user = hmac.compare_digest(
            state_user.encode(), (user_id or UNKNOWN_IDENTITY).encode()
        )
        same_org = hmac.compare_digest(
            state_org.encode(), (organization_id or UNKNOWN_IDENTITY).encode()
        )
        if not (same_user and same_org):
            raise self._reject(
                "identity_mismatch", state, user=mask_identifier(user_id or "")
            )

        age_ms = self._now_ms() - issued_ms
        if age_ms < 0 or age_ms >= self.max_age_ms:
            raise self._reject(
                "expired",
                state,
                message="OAuth state parameter has expired",
                age_ms=age_ms,
            )

    def _reject(
        self,
        reason: str,
        state: str,
        *,
        message: str = "Invalid OAuth state parameter",
        **fields,
    ) -> ValidationError:
        logger.warning("oauth_state_rejected", reason=reason, state=state, **fields)
        return ValidationError(message, error_code="oauth_state_invalid")


__all__ = ["StateIssuer", "DEFAULT_STATE_MAX_AGE_MS", "UNKNOWN_IDENTITY"]
