"""Route tests for document upload, listing, access, anchoring and verification."""

import hashlib

import pytest
from starlette.testclient import TestClient

from signvault.app import create_app
from signvault.config import Settings
from signvault.storage import VaultStorage

pytestmark = pytest.mark.unit

CONTENT = b"%PDF-1.7 vaulted contract"


@pytest.fixture
def storage(tmp_path):
    return VaultStorage(str(tmp_path / "vault.db"))


@pytest.fixture
def client(storage, blob_store, ledger, tmp_path):
    settings = Settings(
        database_path=storage.db_path,
        storage_root=str(tmp_path / "blobs"),
        webhook_workers=1,
    )
    app = create_app(settings, storage=storage, blob_store=blob_store, ledger=ledger)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def document(client):
    writer = client.app.state.writer
    return client.portal.call(writer.vault, CONTENT, "alice", "contract.pdf")


def event_types(client, document_id):
    response = client.get(f"/api/v1/documents/{document_id}/history")
    assert response.status_code == 200
    return [entry["event_type"] for entry in response.json()["entries"]]


def test_get_document_records_view(client, document):
    response = client.get(f"/api/v1/documents/{document.id}")

    assert response.status_code == 200
    assert response.json()["fingerprint"] == hashlib.sha256(CONTENT).hexdigest()
    assert event_types(client, document.id) == ["viewed", "vaulted"]


def test_content_returns_exact_bytes(client, document):
    response = client.get(f"/api/v1/documents/{document.id}/content")

    assert response.status_code == 200
    assert response.content == CONTENT
    assert response.headers["content-type"] == "application/pdf"
    assert "contract.pdf" in response.headers["content-disposition"]
    assert event_types(client, document.id)[0] == "downloaded"


def test_unknown_document_is_404(client):
    assert client.get("/api/v1/documents/missing").status_code == 404
    assert client.get("/api/v1/documents/missing/history").status_code == 404
    assert client.post("/api/v1/documents/missing/anchor").status_code == 404


def test_manual_anchor(client, document, ledger):
    response = client.post(f"/api/v1/documents/{document.id}/anchor")

    assert response.status_code == 200
    body = response.json()
    assert body["anchored"] is True
    assert body["tx_id"].startswith("0x")
    assert len(ledger.submitted) == 1
    assert event_types(client, document.id) == ["blockchain_anchored", "vaulted"]


def test_verify_matching_bytes(client, document, storage):
    response = client.post("/api/v1/verify", content=CONTENT)

    assert response.status_code == 200
    body = response.json()
    assert body["verified"] is True
    assert body["document"]["id"] == document.id

    entries = client.portal.call(storage.list_audit_entries, document.id)
    assert entries[0].event_type.value == "verified"
    assert entries[0].actor == "anonymous"


def test_verify_tampered_bytes_against_document(client, document):
    response = client.post(
        "/api/v1/verify",
        params={"document_id": document.id},
        content=CONTENT + b" ",
    )

    assert response.json()["verified"] is False


def test_verify_requires_body(client):
    assert client.post("/api/v1/verify", content=b"").status_code == 400


def test_upload_vaults_and_anchors(client, storage, ledger):
    response = client.post(
        "/api/v1/documents",
        params={"user_id": "alice", "file_name": "nda.pdf"},
        content=CONTENT,
        headers={"Content-Type": "application/pdf"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["anchored"] is True
    document = body["document"]
    assert document["source"] == "manual upload"
    assert document["file_name"] == "nda.pdf"
    assert document["fingerprint"] == hashlib.sha256(CONTENT).hexdigest()
    assert document["blockchain_txid"] == body["tx_id"]
    assert len(ledger.submitted) == 1

    stored = client.portal.call(storage.get_document, document["id"])
    assert stored.blockchain_txid == body["tx_id"]
    assert event_types(client, document["id"]) == ["blockchain_anchored", "vaulted"]


def test_upload_takes_file_name_from_header(client):
    response = client.post(
        "/api/v1/documents",
        params={"user_id": "alice"},
        content=b"plain text",
        headers={
            "X-File-Name": "notes.txt",
            "Content-Type": "text/plain; charset=utf-8",
        },
    )

    assert response.status_code == 201
    assert response.json()["document"]["file_name"] == "notes.txt"
    assert response.json()["document"]["mime_type"] == "text/plain"


def test_upload_still_stored_when_anchoring_fails(client, ledger):
    ledger.balance = 0

    response = client.post(
        "/api/v1/documents",
        params={"user_id": "alice", "file_name": "nda.pdf"},
        content=CONTENT,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["anchored"] is False
    assert body["document"]["blockchain_txid"] is None
    assert event_types(client, body["document"]["id"]) == [
        "blockchain_anchor_failed",
        "vaulted",
    ]


@pytest.mark.parametrize(
    "params,content",
    [
        ({"file_name": "nda.pdf"}, CONTENT),
        ({"user_id": "alice"}, CONTENT),
        ({"user_id": "alice", "file_name": "nda.pdf"}, b""),
    ],
)
def test_upload_rejects_incomplete_requests(client, params, content):
    response = client.post("/api/v1/documents", params=params, content=content)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_request"


def test_list_documents_newest_first(client, document):
    writer = client.app.state.writer
    newer = client.portal.call(writer.vault, b"second", "alice", "second.pdf")
    client.portal.call(writer.vault, b"other", "bob", "bob.pdf")

    response = client.get("/api/v1/documents", params={"user_id": "alice"})

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == "alice"
    assert [item["id"] for item in body["documents"]] == [newer.id, document.id]


def test_list_documents_requires_user(client):
    assert client.get("/api/v1/documents").status_code == 400
