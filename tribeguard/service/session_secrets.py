from __future__ import annotations

from typing import Optional

from tribeguard.logging import get_logger, mask_identifier
from tribeguard.service.tokens import new_secret
from tribeguard.storage.common import GuardStore

logger = get_logger(__name__)


class SecretManager:
    """Lazily creates and resolves the CSRF secret attached to a session.

    Creation is one atomic create-if-absent call on the shared store, so two
    concurrent first requests of the same session agree on a single secret.
    ``StoreUnavailable`` propagates to the caller.
    """

    def __init__(self, store: GuardStore, *, ttl_seconds: int) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def get_or_create(self, session_id: str) -> str:
        if not session_id:
            raise ValueError("session_id is required")
        candidate = new_secret()
        secret = await self.store.get_or_create_csrf_secret(
            session_id, candidate, self.ttl_seconds
        )
        if secret == candidate:
            logger.info("csrf_secret_created", session=mask_identifier(session_id))
        return secret

    async def lookup(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id:
            return None
        return await self.store.get_csrf_secret(session_id)
