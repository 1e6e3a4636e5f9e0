"""PandaDoc adapter."""

import hashlib
import hmac
import json
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

COMPLETED_STATUS = "document.completed"


class PandaDocAdapter(ProviderAdapter):
    name = "pandadoc"
    authorize_url = "https://app.pandadoc.com/oauth2/authorize"
    scope = "read write"

    def __init__(
        self,
        *args,
        api_base: str = "https://api.pandadoc.com",
        webhook_key: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.api_base = api_base.rstrip("/")
        self.webhook_key = webhook_key

    @property
    def token_url(self) -> str:
        return f"{self.api_base}/oauth2/access_token"

    def split_deliveries(self, raw_body: bytes) -> list[bytes]:
        """PandaDoc batches notifications as a JSON array; record each on its own."""
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            return [raw_body]
        if isinstance(payload, list):
            return [json.dumps(item, sort_keys=True).encode() for item in payload]
        return [raw_body]

    def verify_signature(
        self, raw_body: bytes, headers: dict[str, str], query: dict[str, str]
    ) -> bool:
        if not self.webhook_key:
            return True

        signature = headers.get("x-pandadoc-signature") or query.get("signature")
        if not signature:
            logger.warning("PandaDoc webhook arrived without a signature")
            return True

        expected = hmac.new(
            self.webhook_key.encode(), raw_body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def parse_webhook(self, raw_body: bytes) -> NormalizedEvent:
        payload = load_json_object(raw_body)
        data = object_field(payload, "data", "PandaDoc")
        document_id = text_field(data.get("id"), "data.id", "PandaDoc")
        if not document_id:
            raise ParseError("PandaDoc payload has no data.id")

        event_id = text_field(
            payload.get("event_id") or payload.get("id"), "event_id", "PandaDoc"
        )
        created_by = object_field(data, "created_by", "PandaDoc")
        return NormalizedEvent(
            provider_event_id=event_id or self.synthesize_event_id(raw_body),
            provider_account_id=text_field(
                created_by.get("id") or payload.get("account_id"),
                "created_by.id",
                "PandaDoc",
            ),
            document_id=document_id,
            status=text_field(data.get("status"), "data.status", "PandaDoc") or "",
            event_type=text_field(payload.get("event"), "event", "PandaDoc"),
            timestamp=parse_timestamp(
                data.get("date_completed") or data.get("date_modified")
            ),
            document_name=text_field(data.get("name"), "data.name", "PandaDoc"),
        )

    def is_completion_event(self, event: NormalizedEvent) -> bool:
        return COMPLETED_STATUS in (event.status, event.event_type)

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
            f"{base_uri or self.api_base}/public/v1/documents/{document_id}/download",
            operation="download",
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
            f"{base_uri or self.api_base}/public/v1/documents/{document_id}/details",
            operation="metadata",
            headers={"Authorization": f"Bearer {token}"},
        )
        details = response.json()
        recipients = details.get("recipients") or []
        return DocumentMetadata(
            name=details.get("name") or f"document-{document_id}",
            completed_at=parse_timestamp(details.get("date_completed")),
            parties=[
                {
                    "name": " ".join(
                        part
                        for part in (r.get("first_name"), r.get("last_name"))
                        if part
                    )
                    or None,
                    "email": r.get("email"),
                    "status": "completed" if r.get("has_completed") else "pending",
                }
                for r in recipients
            ],
            raw=details,
        )

    async def fetch_account(self, access_token: str) -> AccountInfo:
        response = await self._request(
            "GET",
            f"{self.api_base}/public/v1/users/me",
            operation="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        me = response.json()
        full_name = " ".join(
            part for part in (me.get("first_name"), me.get("last_name")) if part
        )
        return AccountInfo(
            account_id=me.get("user_id") or me.get("id"),
            name=full_name or None,
            email=me.get("email"),
            base_uri=self.api_base,
        )
