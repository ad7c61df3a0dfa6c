"""Stateless CSRF tokens bound to a per-session secret.

A token is ``<nonce>.<hmac>`` where the nonce is 16 random bytes and the
HMAC is SHA-256 keyed by the session secret, both hex encoded. Tokens carry
no server-side state and stay valid for the whole lifetime of the secret.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

NONCE_BYTES = 16
SECRET_BYTES = 32


def new_secret() -> str:
    return secrets.token_hex(SECRET_BYTES)


def new_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)


def sign(secret: str, message: str) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed by ``secret``."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def signature_matches(secret: str, message: str, supplied: str) -> bool:
    """Constant-time check of a hex signature; malformed hex never matches."""
    try:
        supplied_bytes = bytes.fromhex(supplied)
    except ValueError:
        return False
    expected = bytes.fromhex(sign(secret, message))
    return hmac.compare_digest(supplied_bytes, expected)


def generate(secret: str) -> str:
    if not secret:
        raise ValueError("secret is required")
    nonce = new_nonce()
    return f"{nonce}.{sign(secret, nonce)}"


def verify(token: str | None, secret: str | None) -> bool:
    """Return True only when ``token`` was signed with ``secret``.

    Malformed input of any shape returns False instead of raising.
    """
    if not token or not secret or not isinstance(token, str):
        return False
    parts = token.split(".")
    if len(parts) != 2:
        return False
    nonce, supplied = parts
    if not nonce or not supplied:
        return False
    return signature_matches(secret, nonce, supplied)


__all__ = ["generate", "verify", "new_secret", "new_nonce", "sign", "signature_matches"]
