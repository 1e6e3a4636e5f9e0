"""
Unit tests for vaulting: fingerprint integrity, write-then-record ordering,
blob store path safety and verification.
"""

import hashlib
from unittest.mock import AsyncMock

import pytest

from signvault.errors import StorageWriteError
from signvault.models import AuditEventType
from signvault.vault.blob_store import BlobStoreError
from signvault.vault.verification import verify_document
from signvault.vault.writer import safe_file_name

pytestmark = pytest.mark.unit

SAMPLES = [
    b"",
    b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n",
    bytes(range(256)) * 64,
    b"line one\r\nline two\n",
]


@pytest.mark.parametrize("data", SAMPLES)
async def test_fingerprint_matches_sha256_and_bytes_round_trip(
    writer, blob_store, data
):
    document = await writer.vault(data, "alice", "contract.pdf", source="docusign")

    assert document.fingerprint == hashlib.sha256(data).hexdigest()
    assert document.size == len(data)
    assert await blob_store.get(document.storage_path) == data


async def test_vault_records_document_and_audit_entry(writer, temp_storage):
    document = await writer.vault(b"signed", "alice", "NDA.pdf", source="pandadoc")

    stored = await temp_storage.get_document(document.id)
    assert stored.source == "pandadoc"
    assert stored.retention_period == "7 years"
    assert stored.blockchain_txid is None
    assert stored.storage_path == f"vaulted/alice/{document.id}/NDA.pdf"

    history = await temp_storage.list_audit_entries(document.id)
    assert [entry.event_type for entry in history] == [AuditEventType.VAULTED]
    assert history[0].actor == "system"
    assert history[0].metadata["fingerprint"] == document.fingerprint


async def test_each_vault_gets_a_fresh_document_id(writer):
    first = await writer.vault(b"same", "alice", "a.pdf")
    second = await writer.vault(b"same", "alice", "a.pdf")

    assert first.id != second.id
    assert first.fingerprint == second.fingerprint
    assert first.source == "manual upload"


async def test_failed_write_creates_no_document(writer, temp_storage):
    writer.blob_store.put = AsyncMock(side_effect=BlobStoreError("disk full"))
    temp_storage.insert_document = AsyncMock()

    with pytest.raises(StorageWriteError, match="disk full"):
        await writer.vault(b"data", "alice", "x.pdf")

    temp_storage.insert_document.assert_not_called()


def test_safe_file_name_strips_directories():
    assert safe_file_name("../../etc/passwd") == "passwd"
    assert safe_file_name("C:\\docs\\contract.pdf") == "contract.pdf"
    assert safe_file_name("  ") == "document.pdf"


class TestBlobStore:
    async def test_rejects_traversal(self, blob_store):
        with pytest.raises(BlobStoreError):
            await blob_store.put("../escape.pdf", b"x")
        with pytest.raises(BlobStoreError):
            await blob_store.put("/abs/path.pdf", b"x")

    async def test_refuses_to_overwrite(self, blob_store):
        await blob_store.put("a/b.pdf", b"first")
        with pytest.raises(BlobStoreError):
            await blob_store.put("a/b.pdf", b"second")
        assert await blob_store.get("a/b.pdf") == b"first"

    async def test_missing_blob_raises(self, blob_store):
        with pytest.raises(BlobStoreError):
            await blob_store.get("nope.pdf")


class TestVerification:
    async def test_matching_bytes_verify(self, writer, audit, temp_storage):
        document = await writer.vault(b"original", "alice", "a.pdf")

        result = await verify_document(audit, b"original", actor="bob")

        assert result.verified is True
        assert result.document.id == document.id
        history = await temp_storage.list_audit_entries(document.id)
        assert history[0].event_type == AuditEventType.VERIFIED
        assert history[0].actor == "bob"
        assert history[0].metadata["verified"] is True

    async def test_tampered_bytes_fail_against_named_document(
        self, writer, audit, temp_storage
    ):
        document = await writer.vault(b"original", "alice", "a.pdf")

        result = await verify_document(audit, b"originaL", document_id=document.id)

        assert result.verified is False
        assert result.document.id == document.id
        history = await temp_storage.list_audit_entries(document.id)
        assert history[0].metadata["verified"] is False

    async def test_unknown_bytes_do_not_verify(self, audit):
        result = await verify_document(audit, b"never vaulted")

        assert result.verified is False
        assert result.document is None
        assert result.to_dict()["document"] is None
