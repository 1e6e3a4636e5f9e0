"""Out-of-band processing of one claimed webhook event.

Pipeline per event: parse, filter on completion, resolve the connection,
obtain a valid token, download, vault, anchor. Every failure before vaulting
completes is terminal to the event and recorded on it. Anchoring runs last and
never changes the outcome.
"""

import logging
import time
from typing import Optional

from signvault.anchoring.service import AnchoringService
from signvault.auth.token_manager import TokenManager
from signvault.errors import (
    AuthError,
    ConnectionNotFoundError,
    SignVaultError,
    describe_error,
)
from signvault.models import EventStatus
from signvault.observability.metrics import record_webhook_completed
from signvault.observability.tracing import add_span_attribute, trace_pipeline_stage
from signvault.pipeline.recorder import EventRecorder
from signvault.providers.base import DocumentMetadata, NormalizedEvent, ProviderAdapter
from signvault.providers.registry import ProviderRegistry
from signvault.storage import VaultStorage
from signvault.vault.writer import VaultWriter

logger = logging.getLogger(__name__)


def document_file_name(
    event: NormalizedEvent, metadata: Optional[DocumentMetadata]
) -> str:
    name = (metadata.name if metadata else None) or event.document_name
    name = name or event.document_id
    if not name.lower().endswith(".pdf"):
        name = f"{name}.pdf"
    return name


class WebhookProcessor:
    def __init__(
        self,
        storage: VaultStorage,
        providers: ProviderRegistry,
        recorder: EventRecorder,
        token_manager: TokenManager,
        writer: VaultWriter,
        anchoring: AnchoringService,
    ):
        self.storage = storage
        self.providers = providers
        self.recorder = recorder
        self.token_manager = token_manager
        self.writer = writer
        self.anchoring = anchoring

    async def process(
        self, provider: str, event_record_id: int, raw_body: bytes
    ) -> EventStatus:
        """
        Drive a claimed event to a terminal status. Never raises.

        Returns:
            The terminal status that was recorded
        """
        start_time = time.time()
        with trace_pipeline_stage("process", provider, event_record_id):
            try:
                adapter = self.providers.get(provider)
                if adapter is None:
                    raise SignVaultError(f"No adapter registered for {provider}")
                document_id = await self._run(adapter, raw_body)
            except Exception as e:
                logger.error(
                    f"{provider} event record {event_record_id} failed: "
                    f"{describe_error(e)}",
                    exc_info=not isinstance(e, SignVaultError),
                )
                status = EventStatus.FAILED
                await self.recorder.mark_processed(
                    event_record_id, status, error=describe_error(e)
                )
            else:
                status = EventStatus.PROCESSED
                await self.recorder.mark_processed(
                    event_record_id, status, document_id=document_id
                )
                if document_id:
                    add_span_attribute("signvault.document_id", document_id)

        record_webhook_completed(provider, status.value, time.time() - start_time)
        return status

    async def _run(self, adapter: ProviderAdapter, raw_body: bytes) -> Optional[str]:
        event = adapter.parse_webhook(raw_body)

        if not adapter.is_completion_event(event):
            logger.info(
                f"{adapter.name} document {event.document_id} status "
                f"{event.event_type or event.status}: nothing to vault"
            )
            return None

        connection = None
        if event.provider_account_id:
            connection = await self.storage.find_connection_by_account(
                adapter.name, event.provider_account_id
            )
        if connection is None:
            raise ConnectionNotFoundError(
                f"No {adapter.name} connection for account {event.provider_account_id}"
            )
        if connection.needs_reconnect:
            raise AuthError(
                f"{adapter.name} connection {connection.id} must be reconnected"
            )

        token = await self.token_manager.get_valid_token(connection)

        try:
            data = await adapter.download_document(
                token,
                connection.provider_account_id,
                event.document_id,
                base_uri=connection.base_uri,
            )
        except AuthError:
            await self.storage.flag_connection_for_reconnect(connection.id)
            raise

        metadata = None
        try:
            metadata = await adapter.get_metadata(
                token,
                connection.provider_account_id,
                event.document_id,
                base_uri=connection.base_uri,
            )
        except SignVaultError as e:
            logger.warning(
                f"{adapter.name} metadata for {event.document_id} unavailable: {e}"
            )

        document = await self.writer.vault(
            data,
            connection.user_id,
            document_file_name(event, metadata),
            source=adapter.name,
            metadata={
                "provider_document_id": event.document_id,
                "provider_event_id": event.provider_event_id,
                "provider_account_id": connection.provider_account_id,
                "completed_at": (metadata.completed_at if metadata else None)
                or event.timestamp,
                "parties": metadata.parties if metadata else [],
            },
        )

        await self.anchoring.anchor(document)
        return document.id
