"""Fingerprint a document and commit it to the vault."""

import hashlib
import logging
import uuid
from pathlib import PurePosixPath
from typing import Any, Optional

from signvault.errors import StorageWriteError
from signvault.models import SYSTEM_ACTOR, AuditEventType, Document, utcnow
from signvault.observability.metrics import record_document_vaulted
from signvault.storage import VaultStorage
from signvault.vault.audit import AuditLedger
from signvault.vault.blob_store import BlobStore, BlobStoreError

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/pdf"
DEFAULT_RETENTION = "7 years"
MANUAL_UPLOAD_SOURCE = "manual upload"


def fingerprint(data: bytes) -> str:
    """SHA-256 of the exact bytes, lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def safe_file_name(file_name: str) -> str:
    """Strip directories so a provider-supplied name cannot escape the document folder."""
    name = PurePosixPath(file_name.replace("\\", "/")).name.strip()
    return name or "document.pdf"


class VaultWriter:
    def __init__(
        self,
        storage: VaultStorage,
        blob_store: BlobStore,
        audit: AuditLedger,
        retention_period: str = DEFAULT_RETENTION,
    ):
        self.storage = storage
        self.blob_store = blob_store
        self.audit = audit
        self.retention_period = retention_period

    async def vault(
        self,
        data: bytes,
        user_id: str,
        file_name: str,
        source: str = MANUAL_UPLOAD_SOURCE,
        *,
        mime_type: str = DEFAULT_MIME_TYPE,
        metadata: Optional[dict[str, Any]] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Document:
        """
        Store ``data`` and record it as a new Document.

        Bytes are written before the row is inserted, so a failed write never
        leaves a Document pointing at missing content.

        Raises:
            StorageWriteError: the blob write did not complete
        """
        document_id = str(uuid.uuid4())
        name = safe_file_name(file_name)
        digest = fingerprint(data)
        storage_path = f"vaulted/{user_id}/{document_id}/{name}"

        try:
            await self.blob_store.put(storage_path, data)
        except BlobStoreError as e:
            raise StorageWriteError(str(e)) from e

        document = Document(
            id=document_id,
            user_id=user_id,
            storage_path=storage_path,
            file_name=name,
            fingerprint=digest,
            size=len(data),
            mime_type=mime_type,
            source=source,
            retention_period=self.retention_period,
            metadata=metadata or {},
            created_at=utcnow(),
        )
        await self.storage.insert_document(document)

        await self.audit.append(
            document_id,
            AuditEventType.VAULTED,
            actor,
            {
                "fingerprint": digest,
                "size": len(data),
                "source": source,
                "file_name": name,
            },
        )
        record_document_vaulted(source, len(data))
        logger.info(
            f"Vaulted document {document_id} for user {user_id} "
            f"({len(data)} bytes, sha256={digest[:12]}...)"
        )
        return document

    async def read(self, document: Document) -> bytes:
        return await self.blob_store.get(document.storage_path)
