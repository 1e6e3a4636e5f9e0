"""SignNow adapter."""

import logging
from typing import Optional

from signvault.errors import ParseError
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

COMPLETED_EVENTS = frozenset({"document.complete", "document.completed"})


class SignNowAdapter(ProviderAdapter):
    name = "signnow"
    authorize_url = "https://app.signnow.com/authorize"
    scope = "all"

    def __init__(self, *args, api_base: str = "https://api.signnow.com", **kwargs):
        super().__init__(*args, **kwargs)
        self.api_base = api_base.rstrip("/")

    @property
    def token_url(self) -> str:
        return f"{self.api_base}/oauth2/token"

    def parse_webhook(self, raw_body: bytes) -> NormalizedEvent:
        """
        Accept both the flat legacy body and the ``meta``/``content`` event
        subscription body.
        """
        payload = load_json_object(raw_body)
        meta = object_field(payload, "meta", "SignNow")
        content = object_field(payload, "content", "SignNow")

        document_id = text_field(
            payload.get("document_id") or content.get("document_id"),
            "document_id",
            "SignNow",
        )
        if not document_id:
            raise ParseError("SignNow payload has no document_id")

        event_type = text_field(
            payload.get("event_type") or payload.get("event") or meta.get("event"),
            "event",
            "SignNow",
        )
        event_id = text_field(
            payload.get("event_id") or payload.get("id") or meta.get("event_id"),
            "event_id",
            "SignNow",
        )

        return NormalizedEvent(
            provider_event_id=event_id or self.synthesize_event_id(raw_body),
            provider_account_id=text_field(
                payload.get("user_id")
                or content.get("user_id")
                or meta.get("initiator_id"),
                "user_id",
                "SignNow",
            ),
            document_id=document_id,
            status=text_field(payload.get("status"), "status", "SignNow")
            or event_type
            or "",
            event_type=event_type,
            timestamp=parse_timestamp(meta.get("timestamp") or payload.get("timestamp")),
            document_name=text_field(
                content.get("document_name") or payload.get("document_name"),
                "document_name",
                "SignNow",
            ),
        )

    def is_completion_event(self, event: NormalizedEvent) -> bool:
        return event.status in COMPLETED_EVENTS or event.event_type in COMPLETED_EVENTS

    async def download_document(
        self,
        token: str,
        account_id: Optional[str],
        document_id: str,
        *,
        base_uri: Optional[str] = None,
    ) -> bytes:
        response = await self._request(
            "GET",
            f"{base_uri or self.api_base}/document/{document_id}/download",
            operation="download",
            params={"type": "pdf"},
            headers={"Authorization": f"Bearer {token}"},
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
        response = await self._request(
            "GET",
            f"{base_uri or self.api_base}/document/{document_id}",
            operation="metadata",
            headers={"Authorization": f"Bearer {token}"},
        )
        document = response.json()
        invites = document.get("field_invites") or []
        return DocumentMetadata(
            name=document.get("document_name") or f"document-{document_id}",
            completed_at=parse_timestamp(document.get("updated")),
            parties=[
                {"name": None, "email": invite.get("email"), "status": invite.get("status")}
                for invite in invites
            ],
            raw=document,
        )

    async def fetch_account(self, access_token: str) -> AccountInfo:
        response = await self._request(
            "GET",
            f"{self.api_base}/user",
            operation="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        user = response.json()
        emails = user.get("emails") or []
        full_name = " ".join(
            part for part in (user.get("first_name"), user.get("last_name")) if part
        )
        return AccountInfo(
            account_id=user.get("id"),
            name=full_name or None,
            email=user.get("email") or (emails[0] if emails else None),
            base_uri=self.api_base,
        )
