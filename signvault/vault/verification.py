"""Integrity checks of presented bytes against vaulted fingerprints."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from signvault.models import AuditEventType, Document
from signvault.vault.audit import AuditLedger
from signvault.vault.writer import fingerprint

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    verified: bool
    fingerprint: str
    document: Optional[Document] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "fingerprint": self.fingerprint,
            "document": self.document.model_dump(mode="json")
            if self.document
            else None,
        }


async def verify_document(
    audit: AuditLedger,
    data: bytes,
    document_id: Optional[str] = None,
    actor: str = "anonymous",
) -> VerificationResult:
    """
    Hash ``data`` and compare it with a vaulted document.

    With ``document_id`` the bytes are checked against that document only;
    otherwise any document with the same fingerprint is a match. Every check
    against a known document leaves a ``verified`` audit entry, including
    failed ones.
    """
    digest = fingerprint(data)
    storage = audit.storage

    if document_id is not None:
        document = await storage.get_document(document_id)
        if document is None:
            logger.info(f"Verification requested for unknown document {document_id}")
            return VerificationResult(verified=False, fingerprint=digest)
        verified = document.fingerprint == digest
    else:
        matches = await storage.find_documents_by_fingerprint(digest)
        if not matches:
            logger.info(f"No vaulted document matches sha256={digest[:12]}...")
            return VerificationResult(verified=False, fingerprint=digest)
        document = matches[0]
        verified = True

    await audit.append(
        document.id,
        AuditEventType.VERIFIED,
        actor,
        {
            "verified": verified,
            "presented_fingerprint": digest,
            "stored_fingerprint": document.fingerprint,
            "size": len(data),
        },
    )
    return VerificationResult(verified=verified, fingerprint=digest, document=document)
