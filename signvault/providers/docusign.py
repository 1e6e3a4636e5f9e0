"""DocuSign eSignature adapter (Connect webhooks, OAuth with PKCE)."""

import logging
from typing import Any, Optional

from signvault.errors import AuthError, ParseError
from signvault.providers.base import (
    AccountInfo,
    DocumentMetadata,
    NormalizedEvent,
    ProviderAdapter,
    load_json_object,
    object_field,
    parse_timestamp,
    text_field,
)

logger = logging.getLogger(__name__)

COMPLETED_STATUS = "completed"
COMPLETED_EVENT = "envelope-completed"


class DocuSignAdapter(ProviderAdapter):
    name = "docusign"
    scope = "signature"
    uses_pkce = True
    basic_client_auth = True
    default_expires_in = 28800

    def __init__(self, *args, auth_server: str = "account-d.docusign.com", **kwargs):
        super().__init__(*args, **kwargs)
        self.auth_server = auth_server
        self.authorize_url = f"https://{auth_server}/oauth/auth"

    @property
    def token_url(self) -> str:
        return f"https://{self.auth_server}/oauth/token"

    @property
    def userinfo_url(self) -> str:
        return f"https://{self.auth_server}/oauth/userinfo"

    def parse_webhook(self, raw_body: bytes) -> NormalizedEvent:
        """
        Parse a Connect (JSON SIM) notification.

        Connect does not assign event ids, so redeliveries are keyed on
        ``{envelopeId}:{event}``; every status change of an envelope is
        recorded once.
        """
        payload = load_json_object(raw_body)
        data = object_field(payload, "data", "DocuSign")

        envelope_id = text_field(
            data.get("envelopeId") or payload.get("envelopeId"), "envelopeId", "DocuSign"
        )
        if not envelope_id:
            raise ParseError("DocuSign payload has no envelopeId")

        summary = object_field(data, "envelopeSummary", "DocuSign")
        event = text_field(payload.get("event"), "event", "DocuSign")
        status = (
            text_field(summary.get("status") or payload.get("status"), "status", "DocuSign")
            or ""
        )
        event_id = text_field(payload.get("eventId"), "eventId", "DocuSign")

        return NormalizedEvent(
            provider_event_id=event_id or f"{envelope_id}:{event or status}",
            provider_account_id=text_field(
                data.get("accountId") or payload.get("accountId"), "accountId", "DocuSign"
            ),
            document_id=envelope_id,
            status=status,
            event_type=event,
            timestamp=parse_timestamp(
                payload.get("generatedDateTime") or summary.get("completedDateTime")
            ),
            document_name=text_field(
                summary.get("emailSubject"), "emailSubject", "DocuSign"
            ),
        )

    def is_completion_event(self, event: NormalizedEvent) -> bool:
        return (
            event.status.lower() == COMPLETED_STATUS
            or event.event_type == COMPLETED_EVENT
        )

    def _account_url(self, account_id: Optional[str], base_uri: Optional[str]) -> str:
        if not base_uri or not account_id:
            raise AuthError(
                "DocuSign connection is missing its account id or base URI; reconnect required"
            )
        return f"{base_uri.rstrip('/')}/restapi/v2.1/accounts/{account_id}"

    async def download_document(
        self,
        token: str,
        account_id: Optional[str],
        document_id: str,
        *,
        base_uri: Optional[str] = None,
    ) -> bytes:
        url = f"{self._account_url(account_id, base_uri)}/envelopes/{document_id}/documents/combined"
        response = await self._request(
            "GET",
            url,
            operation="download",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/pdf"},
        )
        return response.content

    async def get_metadata(
        self,
        token: str,
        account_id: Optional[str],
        document_id: str,
        *,
        base_uri: Optional[str] = None,
    ) -> DocumentMetadata:
        url = f"{self._account_url(account_id, base_uri)}/envelopes/{document_id}"
        response = await self._request(
            "GET",
            url,
            operation="metadata",
            params={"include": "recipients"},
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        envelope: dict[str, Any] = response.json()
        signers = (envelope.get("recipients") or {}).get("signers") or []
        return DocumentMetadata(
            name=envelope.get("emailSubject") or f"envelope-{document_id}",
            completed_at=parse_timestamp(envelope.get("completedDateTime")),
            parties=[
                {
                    "name": signer.get("name"),
                    "email": signer.get("email"),
                    "status": signer.get("status"),
                }
                for signer in signers
            ],
            raw=envelope,
        )

    async def fetch_account(self, access_token: str) -> AccountInfo:
        response = await self._request(
            "GET",
            self.userinfo_url,
            operation="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        userinfo = response.json()
        accounts = userinfo.get("accounts") or []
        if not accounts:
            raise AuthError("DocuSign user has no accounts")

        account = next((a for a in accounts if a.get("is_default")), accounts[0])
        return AccountInfo(
            account_id=account.get("account_id"),
            name=account.get("account_name") or userinfo.get("name"),
            email=userinfo.get("email"),
            base_uri=account.get("base_uri"),
        )
