"""Append-only audit trail per document."""

import logging
from typing import Any, Optional

from signvault.models import AuditEventType, AuditLogEntry
from signvault.storage import VaultStorage

logger = logging.getLogger(__name__)


class AuditLedger:
    """
    Writer and reader for the document audit log.

    Exposes insert and read only. Triggers on the table abort UPDATE and DELETE.
    """

    def __init__(self, storage: VaultStorage):
        self.storage = storage

    async def append(
        self,
        document_id: str,
        event_type: AuditEventType,
        actor: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = await self.storage.insert_audit_entry(
            document_id, event_type, actor, metadata
        )
        logger.info(
            f"Audit: {event_type.value} on document {document_id} by {actor}"
        )
        return entry

    async def history(self, document_id: str) -> list[AuditLogEntry]:
        """Every entry for ``document_id``, newest first."""
        return await self.storage.list_audit_entries(document_id)
