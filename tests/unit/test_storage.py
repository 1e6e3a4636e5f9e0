"""
Unit tests for VaultStorage.

Covers event deduplication and claiming, single-use OAuth states, connection
upserts with encrypted tokens, and the append-only audit log.
"""

import sqlite3
import time
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest

from signvault.errors import StorageWriteError
from signvault.models import AuditEventType, Document, EventStatus, utcnow

pytestmark = pytest.mark.unit


def _document(**overrides) -> Document:
    fields = {
        "id": str(uuid.uuid4()),
        "user_id": "alice",
        "storage_path": "vaulted/alice/x/contract.pdf",
        "file_name": "contract.pdf",
        "fingerprint": "ab" * 32,
        "size": 10,
        "source": "docusign",
        "retention_period": "7 years",
        "created_at": utcnow(),
    }
    fields.update(overrides)
    return Document(**fields)


class TestWebhookEvents:
    async def test_insert_is_deduplicated_by_provider_event_id(self, temp_storage):
        first_id, first_new = await temp_storage.insert_webhook_event(
            "docusign", "evt-1", '{"a": 1}', event_type="envelope-completed"
        )
        second_id, second_new = await temp_storage.insert_webhook_event(
            "docusign", "evt-1", '{"a": 1}'
        )

        assert first_new is True
        assert second_new is False
        assert first_id == second_id

        event = await temp_storage.get_webhook_event(first_id)
        assert event.status == EventStatus.RECEIVED
        assert event.event_type == "envelope-completed"

    async def test_same_event_id_from_other_provider_is_distinct(self, temp_storage):
        a, _ = await temp_storage.insert_webhook_event("docusign", "evt-1", "{}")
        b, inserted = await temp_storage.insert_webhook_event("signnow", "evt-1", "{}")
        assert inserted is True
        assert a != b

    async def test_claim_only_succeeds_once(self, temp_storage):
        event_id, _ = await temp_storage.insert_webhook_event("docusign", "e", "{}")

        assert await temp_storage.claim_webhook_event(event_id) is True
        assert await temp_storage.claim_webhook_event(event_id) is False

        event = await temp_storage.get_webhook_event(event_id)
        assert event.status == EventStatus.PROCESSING
        assert event.claimed_at is not None

    async def test_claim_with_live_lease_is_refused(self, temp_storage):
        event_id, _ = await temp_storage.insert_webhook_event("docusign", "e", "{}")
        await temp_storage.claim_webhook_event(event_id)

        assert await temp_storage.claim_webhook_event(event_id, lease_seconds=60) is False

    async def test_claim_reclaims_expired_lease(self, temp_storage):
        event_id, _ = await temp_storage.insert_webhook_event("docusign", "e", "{}")
        await temp_storage.claim_webhook_event(event_id)

        async with aiosqlite.connect(temp_storage.db_path) as db:
            await db.execute(
                "UPDATE webhook_events SET claimed_at = ? WHERE id = ?",
                (time.time() - 3600, event_id),
            )
            await db.commit()

        assert await temp_storage.claim_webhook_event(event_id, lease_seconds=60) is True

    async def test_finish_is_idempotent_and_terminal(self, temp_storage):
        event_id, _ = await temp_storage.insert_webhook_event("docusign", "e", "{}")
        await temp_storage.claim_webhook_event(event_id)

        assert await temp_storage.finish_webhook_event(
            event_id, EventStatus.FAILED, error="ParseError: bad"
        )
        # A later attempt cannot overwrite the terminal status
        assert not await temp_storage.finish_webhook_event(
            event_id, EventStatus.PROCESSED
        )

        event = await temp_storage.get_webhook_event(event_id)
        assert event.status == EventStatus.FAILED
        assert event.processing_error == "ParseError: bad"
        assert event.processed_at is not None

    async def test_finish_rejects_non_terminal_status(self, temp_storage):
        with pytest.raises(ValueError):
            await temp_storage.finish_webhook_event(1, EventStatus.PROCESSING)

    async def test_list_unfinished(self, temp_storage):
        done, _ = await temp_storage.insert_webhook_event("docusign", "a", "{}")
        pending, _ = await temp_storage.insert_webhook_event("docusign", "b", "{}")
        await temp_storage.finish_webhook_event(done, EventStatus.PROCESSED)

        unfinished = await temp_storage.list_unfinished_webhook_events()
        assert [event.id for event in unfinished] == [pending]

    async def test_get_by_key(self, temp_storage):
        event_id, _ = await temp_storage.insert_webhook_event("pandadoc", "p-1", "{}")
        event = await temp_storage.get_webhook_event_by_key("pandadoc", "p-1")
        assert event.id == event_id
        assert await temp_storage.get_webhook_event_by_key("pandadoc", "nope") is None


class TestOAuthStates:
    async def test_state_is_single_use(self, temp_storage):
        await temp_storage.store_oauth_state(
            "state-1", provider="docusign", user_id="alice", code_verifier="v"
        )

        consumed = await temp_storage.consume_oauth_state("state-1")
        assert consumed.user_id == "alice"
        assert consumed.code_verifier == "v"

        assert await temp_storage.consume_oauth_state("state-1") is None

    async def test_expired_state_is_rejected(self, temp_storage):
        await temp_storage.store_oauth_state(
            "old", provider="signnow", user_id="bob", ttl_seconds=-1
        )
        assert await temp_storage.consume_oauth_state("old") is None

    async def test_cleanup_expired_states(self, temp_storage):
        await temp_storage.store_oauth_state("old", "signnow", "bob", ttl_seconds=-1)
        await temp_storage.store_oauth_state("new", "signnow", "bob")

        assert await temp_storage.cleanup_expired_states() == 1
        assert await temp_storage.consume_oauth_state("new") is not None


class TestConnections:
    async def test_tokens_are_encrypted_at_rest(self, temp_storage, make_connection):
        connection = await make_connection()

        async with aiosqlite.connect(temp_storage.db_path) as db:
            async with db.execute(
                "SELECT encrypted_access_token FROM oauth_connections WHERE id = ?",
                (connection.id,),
            ) as cursor:
                (stored,) = await cursor.fetchone()

        assert b"access-1" not in stored
        assert connection.access_token == "access-1"

    async def test_upsert_updates_existing_connection(self, temp_storage, make_connection):
        first = await make_connection()
        await temp_storage.flag_connection_for_reconnect(first.id)

        second = await make_connection(account_id="acct-2")

        assert second.id == first.id
        assert second.provider_account_id == "acct-2"
        assert second.needs_reconnect is False

    async def test_find_by_account(self, temp_storage, make_connection):
        connection = await make_connection(provider="signnow", account_id="sn-9")

        found = await temp_storage.find_connection_by_account("signnow", "sn-9")
        assert found.id == connection.id
        assert await temp_storage.find_connection_by_account("docusign", "sn-9") is None

    async def test_delete_connection(self, temp_storage, make_connection):
        connection = await make_connection()
        assert await temp_storage.delete_connection(connection.id) is True
        assert await temp_storage.get_connection(connection.id) is None

    async def test_upsert_raises_when_row_cannot_be_read_back(self, temp_storage):
        with patch.object(temp_storage, "get_connection", AsyncMock(return_value=None)):
            with pytest.raises(StorageWriteError, match="not readable after commit"):
                await temp_storage.upsert_connection(
                    user_id="alice",
                    provider="docusign",
                    access_token="access-1",
                    refresh_token=None,
                    expires_at=utcnow() + timedelta(hours=1),
                )


class TestDocumentsAndAudit:
    async def test_document_round_trip(self, temp_storage):
        document = _document(metadata={"parties": [{"name": "Bob"}]})
        await temp_storage.insert_document(document)

        loaded = await temp_storage.get_document(document.id)
        assert loaded.fingerprint == document.fingerprint
        assert loaded.metadata == {"parties": [{"name": "Bob"}]}
        assert loaded.blockchain_txid is None

        assert await temp_storage.set_document_txid(document.id, "0xabc")
        assert (await temp_storage.get_document(document.id)).blockchain_txid == "0xabc"

    async def test_find_by_fingerprint(self, temp_storage):
        document = _document(fingerprint="cd" * 32)
        await temp_storage.insert_document(document)

        matches = await temp_storage.find_documents_by_fingerprint("CD" * 32)
        assert [match.id for match in matches] == [document.id]

    async def test_list_documents_for_user_newest_first(self, temp_storage):
        older = _document(created_at=utcnow() - timedelta(days=1))
        newer = _document()
        other = _document(user_id="bob")
        for document in (older, newer, other):
            await temp_storage.insert_document(document)

        documents = await temp_storage.list_documents_for_user("alice")
        assert [document.id for document in documents] == [newer.id, older.id]
        assert await temp_storage.list_documents_for_user("carol") == []

    async def test_audit_history_newest_first(self, temp_storage):
        await temp_storage.insert_audit_entry("doc-1", AuditEventType.VAULTED, "system")
        await temp_storage.insert_audit_entry(
            "doc-1", AuditEventType.BLOCKCHAIN_ANCHORED, "system", {"tx_id": "0x1"}
        )
        await temp_storage.insert_audit_entry("doc-2", AuditEventType.VAULTED, "system")

        entries = await temp_storage.list_audit_entries("doc-1")
        assert [entry.event_type for entry in entries] == [
            AuditEventType.BLOCKCHAIN_ANCHORED,
            AuditEventType.VAULTED,
        ]
        assert entries[0].metadata == {"tx_id": "0x1"}

    async def test_audit_log_rejects_update_and_delete(self, temp_storage):
        await temp_storage.insert_audit_entry("doc-1", AuditEventType.VAULTED, "system")

        conn = sqlite3.connect(temp_storage.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError, match="append-only"):
                conn.execute("UPDATE audit_log SET actor = 'mallory'")
            with pytest.raises(sqlite3.IntegrityError, match="append-only"):
                conn.execute("DELETE FROM audit_log")
        finally:
            conn.close()
