"""
Just-in-time access tokens for provider connections.

A connection whose access token expires within the refresh window is
refreshed through its provider's token endpoint before use. Refreshes are
serialized per connection: many providers rotate the refresh token on use,
so a second concurrent grant with the old refresh token would be rejected
even though the connection is healthy.
"""

import logging
from datetime import timedelta

import anyio

from signvault.errors import AuthError, RefreshError
from signvault.models import OAuthConnection, utcnow
from signvault.observability.metrics import record_token_refresh
from signvault.providers.registry import ProviderRegistry
from signvault.storage import VaultStorage

logger = logging.getLogger(__name__)

REFRESH_WINDOW_SECONDS = 300


class TokenManager:
    """Hands out valid provider access tokens, refreshing them when needed."""

    def __init__(
        self,
        storage: VaultStorage,
        providers: ProviderRegistry,
        refresh_window: float = REFRESH_WINDOW_SECONDS,
    ):
        self.storage = storage
        self.providers = providers
        self.refresh_window = refresh_window

        self._refresh_locks: dict[int, anyio.Lock] = {}
        self._locks_lock = anyio.Lock()

    async def _get_refresh_lock(self, connection_id: int) -> anyio.Lock:
        async with self._locks_lock:
            if connection_id not in self._refresh_locks:
                self._refresh_locks[connection_id] = anyio.Lock()
            return self._refresh_locks[connection_id]

    def _needs_refresh(self, connection: OAuthConnection) -> bool:
        return connection.expires_within(self.refresh_window)

    async def get_valid_token(self, connection: OAuthConnection) -> str:
        """
        Return an access token that is valid for at least the refresh window.

        Raises:
            RefreshError: provider rejected the refresh token; the connection
                is flagged for reconnection
            AuthError: the connection has no refresh token to use
            TransientProviderError: token endpoint timed out or failed with 5xx
        """
        if not self._needs_refresh(connection):
            return connection.access_token

        lock = await self._get_refresh_lock(connection.id)
        async with lock:
            # Another task may have refreshed while we waited on the lock
            current = await self.storage.get_connection(connection.id)
            if current is None:
                raise AuthError(f"Connection {connection.id} no longer exists")
            if not self._needs_refresh(current):
                logger.debug(
                    f"Connection {connection.id} refreshed by another task, reusing token"
                )
                return current.access_token

            return await self._refresh(current)

    async def _refresh(self, connection: OAuthConnection) -> str:
        adapter = self.providers.get(connection.provider)
        if adapter is None:
            raise AuthError(f"No adapter registered for provider {connection.provider}")

        if not connection.refresh_token:
            await self.storage.flag_connection_for_reconnect(connection.id)
            raise RefreshError(
                f"{connection.provider} connection {connection.id} has no refresh token"
            )

        logger.info(
            f"Refreshing {connection.provider} token for connection {connection.id} "
            f"(expires {connection.expires_at.isoformat()})"
        )

        try:
            grant = await adapter.refresh(connection.refresh_token)
        except RefreshError:
            record_token_refresh(connection.provider, "rejected")
            await self.storage.flag_connection_for_reconnect(connection.id)
            logger.warning(
                f"{connection.provider} rejected refresh for connection {connection.id}; "
                "user must reconnect"
            )
            raise
        except Exception:
            record_token_refresh(connection.provider, "error")
            raise

        # Providers that do not rotate omit refresh_token; keep the one we have
        refresh_token = grant.refresh_token or connection.refresh_token
        expires_at = utcnow() + timedelta(seconds=grant.expires_in)

        await self.storage.update_connection_tokens(
            connection.id,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        record_token_refresh(connection.provider, "success")
        logger.info(
            f"Refreshed {connection.provider} token for connection {connection.id} "
            f"(expires in {grant.expires_in}s)"
        )
        return grant.access_token
