"""Provider adapter interface shared by every e-signature integration.

An adapter owns everything provider-specific: webhook payload shape, OAuth
endpoints, download/metadata endpoints and the mapping of HTTP failures onto
the shared error taxonomy. The pipeline only ever talks to this interface.
"""

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Optional
from urllib.parse import urlencode

import anyio
import httpx

from signvault.errors import (
    AuthError,
    ParseError,
    ProviderNotFoundError,
    ProviderRequestError,
    RefreshError,
    TransientProviderError,
)
from signvault.observability.metrics import (
    record_provider_api_call,
    record_provider_api_retry,
)
from signvault.observability.tracing import trace_provider_call

logger = logging.getLogger(__name__)


@dataclass
class NormalizedEvent:
    """Provider-neutral view of one webhook notification."""

    provider_event_id: str
    provider_account_id: Optional[str]
    document_id: str
    status: str
    event_type: Optional[str] = None
    timestamp: Optional[datetime] = None
    document_name: Optional[str] = None


@dataclass
class DocumentMetadata:
    name: str
    completed_at: Optional[datetime] = None
    parties: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int


@dataclass
class AccountInfo:
    account_id: Optional[str]
    name: Optional[str] = None
    email: Optional[str] = None
    base_uri: Optional[str] = None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings or epoch seconds; unknown shapes become None."""
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def load_json_object(raw_body: bytes) -> dict[str, Any]:
    """Decode a webhook body that must be a JSON object."""
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ParseError(
            f"Webhook body must be a JSON object, got {type(payload).__name__}"
        )
    return payload


def object_field(payload: dict[str, Any], key: str, provider: str) -> dict[str, Any]:
    """Nested object at ``key``; absent or null becomes an empty dict."""
    value = payload.get(key)
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise ParseError(
            f"{provider} payload field '{key}' must be an object, "
            f"got {type(value).__name__}"
        )
    return value


def text_field(value: Any, field_name: str, provider: str) -> Optional[str]:
    """Scalar webhook field as text. Lists, objects and booleans are rejected."""
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ParseError(
            f"{provider} payload field '{field_name}' must be a string, "
            f"got {type(value).__name__}"
        )
    return str(value)


def retry_transient(func):
    """Retry a provider call on ``TransientProviderError`` with exponential backoff.

    The decorated coroutine must be a method of ``ProviderAdapter``; attempts
    and base delay come from the adapter instance. A ``Retry-After`` hint from
    the provider wins over the computed delay.
    """

    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func(self, *args, **kwargs)
            except TransientProviderError as e:
                if attempt >= self.max_retries:
                    logger.warning(
                        f"{self.name}: giving up after {attempt} attempt(s): {e}"
                    )
                    raise
                delay = (
                    e.retry_after
                    if e.retry_after is not None
                    else self.retry_backoff * (2 ** (attempt - 1))
                )
                logger.warning(
                    f"{self.name}: transient failure ({e}), "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.max_retries})"
                )
                record_provider_api_retry(self.name, type(e).__name__)
                await anyio.sleep(delay)

    return wrapper


class ProviderAdapter(ABC):
    """Base class for e-signature provider integrations."""

    name: str = "unknown"

    # OAuth endpoints and behaviour
    authorize_url: str = ""
    scope: str = ""
    uses_pkce: bool = False
    basic_client_auth: bool = False
    default_expires_in: int = 3600

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = http_client
        self._owns_client = http_client is None

    @property
    @abstractmethod
    def token_url(self) -> str:
        """OAuth token endpoint."""

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def split_deliveries(self, raw_body: bytes) -> list[bytes]:
        """Split one HTTP delivery into per-event bodies. Most providers send one."""
        return [raw_body]

    def verify_signature(
        self, raw_body: bytes, headers: dict[str, str], query: dict[str, str]
    ) -> bool:
        """Check a delivery's authenticity. Providers without signing accept all."""
        return True

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> NormalizedEvent:
        """
        Extract a NormalizedEvent from a raw webhook body.

        Raises:
            ParseError: body is not JSON or lacks a document identifier
        """

    @abstractmethod
    def is_completion_event(self, event: NormalizedEvent) -> bool:
        """True only when the document is fully executed."""

    def synthesize_event_id(self, raw_body: bytes) -> str:
        return "sha256:" + hashlib.sha256(raw_body).hexdigest()

    def delivery_key(self, raw_body: bytes) -> tuple[str, Optional[str]]:
        """
        Deduplication key for a delivery, computed without raising.

        Returns:
            (provider event id, event type). Unparseable bodies get an id
            derived from their bytes so identical redeliveries still collapse.
        """
        try:
            event = self.parse_webhook(raw_body)
        except ParseError:
            return self.synthesize_event_id(raw_body), None
        except Exception as e:
            logger.warning(
                f"{self.name}: unexpected error keying delivery, "
                f"falling back to body hash: {e}"
            )
            return self.synthesize_event_id(raw_body), None
        event_type = event.event_type or event.status
        return str(event.provider_event_id), str(event_type) if event_type else None

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
    async def download_document(
        self,
        token: str,
        account_id: Optional[str],
        document_id: str,
        *,
        base_uri: Optional[str] = None,
    ) -> bytes:
        """Fetch the final, combined signed document."""

    @abstractmethod
    async def get_metadata(
        self,
        token: str,
        account_id: Optional[str],
        document_id: str,
        *,
        base_uri: Optional[str] = None,
    ) -> DocumentMetadata:
        """Fetch document name, completion time and parties."""

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorization_url(
        self, state: str, code_challenge: Optional[str] = None
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, code_verifier: Optional[str] = None
    ) -> TokenGrant:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._token_request(data, operation="token")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Refresh-token grant.

        Raises:
            RefreshError: provider rejected the refresh token
            TransientProviderError: timeout, 5xx or rate limit
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        try:
            return await self._token_request(data, operation="refresh")
        except AuthError as e:
            raise RefreshError(f"{self.name} rejected the refresh token: {e}") from e

    @abstractmethod
    async def fetch_account(self, access_token: str) -> AccountInfo:
        """Call the provider's who-am-I endpoint."""

    async def _token_request(self, data: dict[str, str], operation: str) -> TokenGrant:
        auth = None
        if self.basic_client_auth:
            auth = (self.client_id, self.client_secret)
        else:
            data = {
                **data,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        if self.scope and data["grant_type"] == "authorization_code":
            data.setdefault("scope", self.scope)

        response = await self._request(
            "POST",
            self.token_url,
            operation=operation,
            data=data,
            auth=auth,
            headers={"Accept": "application/json"},
        )
        payload = response.json()
        if "access_token" not in payload:
            raise AuthError(f"{self.name} token response has no access_token")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or self.default_expires_in),
        )

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), follow_redirects=True
            )
        return self._client

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = f"{self.name} {operation} returned HTTP {status}"
        if status in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
            raise AuthError(detail)
        if status == httpx.codes.BAD_REQUEST and operation == "refresh":
            # invalid_grant comes back as 400 from every provider we support
            raise AuthError(f"{detail}: {response.text[:200]}")
        if status == httpx.codes.NOT_FOUND:
            raise ProviderNotFoundError(detail)
        if status == httpx.codes.TOO_MANY_REQUESTS or status >= 500:
            retry_after = response.headers.get("Retry-After")
            raise TransientProviderError(
                detail,
                retry_after=float(retry_after)
                if retry_after and retry_after.isdigit()
                else None,
            )
        if operation in ("token", "refresh"):
            raise AuthError(detail)
        raise ProviderRequestError(detail)

    @retry_transient
    async def _request(
        self, method: str, url: str, *, operation: str, **kwargs
    ) -> httpx.Response:
        """Send a request, record metrics and map failures to the error taxonomy."""
        logger.debug(f"{self.name}: {method} {url}")
        start_time = time.time()
        status_code = 0

        with trace_provider_call(self.name, operation):
            try:
                response = await self._get_http_client().request(
                    method, url, timeout=self.timeout, **kwargs
                )
                status_code = response.status_code
            except httpx.TimeoutException as e:
                raise TransientProviderError(
                    f"{self.name} {operation} timed out: {e}"
                ) from e
            except httpx.RequestError as e:
                raise TransientProviderError(
                    f"{self.name} {operation} transport error: {e}"
                ) from e
            finally:
                record_provider_api_call(
                    self.name, operation, status_code, time.time() - start_time
                )

            self._raise_for_status(response, operation)
            return response

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
