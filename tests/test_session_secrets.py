from unittest.mock import patch

import pytest

from tribeguard.service.session_secrets import SecretManager
from tribeguard.storage.memory import MemoryCache


async def test_lookup_unknown_session():
    manager = SecretManager(MemoryCache(), ttl_seconds=60)
    assert await manager.lookup("sess-1") is None
    assert await manager.lookup(None) is None


async def test_lookup_returns_created_secret():
    manager = SecretManager(MemoryCache(), ttl_seconds=60)
    with patch("tribeguard.service.session_secrets.logger") as mock_logger:
        secret = await manager.get_or_create("sess-1")
        assert await manager.get_or_create("sess-1") == secret
    assert await manager.lookup("sess-1") == secret
    mock_logger.info.assert_called_once()
    assert mock_logger.info.call_args[0][0] == "csrf_secret_created"


async def test_secret_expires_with_session(clock):
    manager = SecretManager(MemoryCache(clock=clock), ttl_seconds=60)
    await manager.get_or_create("sess-1")
    clock.advance(61)
    assert await manager.lookup("sess-1") is None


async def test_empty_session_id_rejected():
    manager = SecretManager(MemoryCache(), ttl_seconds=60)
    with pytest.raises(ValueError):
        await manager.get_or_create("")
