"""
Unit tests for TokenManager.

Verifies just-in-time refresh, persistence of rotated tokens, reconnect
flagging on rejection, and that concurrent callers share a single refresh.
"""

from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest

from signvault.auth.token_manager import TokenManager
from signvault.errors import RefreshError, TransientProviderError
from signvault.providers.base import TokenGrant

pytestmark = pytest.mark.unit


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.name = "docusign"
    adapter.refresh = AsyncMock(
        return_value=TokenGrant(
            access_token="access-2", refresh_token="refresh-2", expires_in=3600
        )
    )
    return adapter


@pytest.fixture
def token_manager(temp_storage, adapter):
    providers = MagicMock()
    providers.get.return_value = adapter
    return TokenManager(temp_storage, providers)


async def test_fresh_token_returned_without_refresh(
    token_manager, adapter, make_connection
):
    connection = await make_connection(expires_in=3600)

    assert await token_manager.get_valid_token(connection) == "access-1"
    adapter.refresh.assert_not_called()


async def test_expiring_token_is_refreshed_and_persisted(
    token_manager, adapter, temp_storage, make_connection
):
    connection = await make_connection(expires_in=120)

    token = await token_manager.get_valid_token(connection)

    assert token == "access-2"
    adapter.refresh.assert_awaited_once_with("refresh-1")
    stored = await temp_storage.get_connection(connection.id)
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-2"
    assert not stored.expires_within(300)


async def test_refresh_without_rotation_keeps_old_refresh_token(
    token_manager, adapter, temp_storage, make_connection
):
    adapter.refresh.return_value = TokenGrant(
        access_token="access-2", refresh_token=None, expires_in=3600
    )
    connection = await make_connection(expires_in=0)

    await token_manager.get_valid_token(connection)

    stored = await temp_storage.get_connection(connection.id)
    assert stored.refresh_token == "refresh-1"


async def test_rejected_refresh_flags_connection(
    token_manager, adapter, temp_storage, make_connection
):
    adapter.refresh.side_effect = RefreshError("invalid_grant")
    connection = await make_connection(expires_in=0)

    with pytest.raises(RefreshError):
        await token_manager.get_valid_token(connection)

    stored = await temp_storage.get_connection(connection.id)
    assert stored.needs_reconnect is True


async def test_transient_refresh_failure_does_not_flag(
    token_manager, adapter, temp_storage, make_connection
):
    adapter.refresh.side_effect = TransientProviderError("503")
    connection = await make_connection(expires_in=0)

    with pytest.raises(TransientProviderError):
        await token_manager.get_valid_token(connection)

    stored = await temp_storage.get_connection(connection.id)
    assert stored.needs_reconnect is False


async def test_missing_refresh_token_raises(
    token_manager, adapter, temp_storage, make_connection
):
    connection = await make_connection(expires_in=0, refresh_token=None)

    with pytest.raises(RefreshError):
        await token_manager.get_valid_token(connection)

    adapter.refresh.assert_not_called()
    assert (await temp_storage.get_connection(connection.id)).needs_reconnect


async def test_concurrent_callers_share_one_refresh(
    token_manager, adapter, make_connection
):
    """Two tasks racing on an expiring connection submit exactly one grant."""

    async def slow_refresh(refresh_token):
        await anyio.sleep(0.05)
        return TokenGrant(
            access_token="access-2", refresh_token="refresh-2", expires_in=3600
        )

    adapter.refresh.side_effect = slow_refresh
    connection = await make_connection(expires_in=60)
    tokens = []

    async def get_token():
        tokens.append(await token_manager.get_valid_token(connection))

    async with anyio.create_task_group() as tg:
        for _ in range(5):
            tg.start_soon(get_token)

    assert tokens == ["access-2"] * 5
    adapter.refresh.assert_awaited_once_with("refresh-1")
