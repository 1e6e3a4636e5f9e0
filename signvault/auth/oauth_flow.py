"""
Provider authorization: state issuance, PKCE and the code-for-token callback.

``state`` values are persisted rather than held in process memory so a
callback can land on any instance, and each one can be redeemed exactly once.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from signvault.errors import AuthError, OAuthStateError
from signvault.models import OAuthConnection, utcnow
from signvault.observability.tracing import trace_operation
from signvault.providers.base import ProviderAdapter
from signvault.storage import VaultStorage

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    code_verifier = secrets.token_urlsafe(64)
    code_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode()).digest())
        .decode()
        .rstrip("=")
    )
    return code_verifier, code_challenge


class OAuthFlow:
    def __init__(self, storage: VaultStorage, state_ttl: int = 600):
        self.storage = storage
        self.state_ttl = state_ttl

    async def start_authorization(
        self, adapter: ProviderAdapter, user_id: str
    ) -> AuthorizationRequest:
        """Persist a fresh state (and PKCE verifier) and build the provider URL."""
        if not adapter.client_id:
            raise AuthError(f"{adapter.name} OAuth client is not configured")

        state = secrets.token_urlsafe(32)
        code_verifier = code_challenge = None
        if adapter.uses_pkce:
            code_verifier, code_challenge = generate_pkce_pair()

        await self.storage.store_oauth_state(
            state,
            provider=adapter.name,
            user_id=user_id,
            code_verifier=code_verifier,
            ttl_seconds=self.state_ttl,
        )
        logger.info(f"Started {adapter.name} authorization for user {user_id}")

        return AuthorizationRequest(
            authorization_url=adapter.build_authorization_url(state, code_challenge),
            state=state,
        )

    async def handle_callback(
        self, adapter: ProviderAdapter, code: str, state: str
    ) -> OAuthConnection:
        """
        Redeem ``state``, exchange ``code`` and upsert the user's connection.

        Raises:
            OAuthStateError: state unknown, expired, consumed, or issued for
                another provider
            AuthError: provider rejected the code
            TransientProviderError: provider unreachable
        """
        oauth_state = await self.storage.consume_oauth_state(state)
        if oauth_state is None:
            raise OAuthStateError("Unknown, expired or already used OAuth state")
        if oauth_state.provider != adapter.name:
            raise OAuthStateError(
                f"OAuth state was issued for {oauth_state.provider}, not {adapter.name}"
            )

        with trace_operation(
            "oauth.callback", {"signvault.provider": adapter.name}
        ):
            grant = await adapter.exchange_code(code, oauth_state.code_verifier)
            account = await adapter.fetch_account(grant.access_token)

        connection = await self.storage.upsert_connection(
            user_id=oauth_state.user_id,
            provider=adapter.name,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=utcnow() + timedelta(seconds=grant.expires_in),
            provider_account_id=account.account_id,
            account_name=account.name,
            account_email=account.email,
            base_uri=account.base_uri,
        )
        logger.info(
            f"Connected {adapter.name} account {account.account_id} "
            f"for user {oauth_state.user_id}"
        )
        return connection
