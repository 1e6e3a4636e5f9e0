"""Initial schema for the vault database

Creates:
- oauth_connections: per-user provider authorizations (tokens encrypted)
- oauth_states: single-use CSRF/PKCE state for the authorization flow
- webhook_events: inbound provider notifications, unique per provider event id
- documents: vaulted artifacts and their fingerprints
- audit_log: append-only history per document, guarded by triggers

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create initial database schema."""

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oauth_connections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            provider_account_id TEXT,
            account_name TEXT,
            account_email TEXT,
            encrypted_access_token BLOB NOT NULL,
            encrypted_refresh_token BLOB,
            expires_at REAL NOT NULL,
            base_uri TEXT,
            needs_reconnect INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_connections_user_provider "
        "ON oauth_connections(user_id, provider, created_at)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_connections_account "
        "ON oauth_connections(provider, provider_account_id, created_at)"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oauth_states (
            state TEXT PRIMARY KEY,
            provider TEXT NOT NULL,
            user_id TEXT NOT NULL,
            code_verifier TEXT,
            created_at REAL NOT NULL,
            expires_at REAL NOT NULL
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS webhook_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            provider TEXT NOT NULL,
            provider_event_id TEXT NOT NULL,
            event_type TEXT,
            raw_payload TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'received',
            processing_error TEXT,
            document_id TEXT,
            received_at REAL NOT NULL,
            claimed_at REAL,
            processed_at REAL,
            UNIQUE (provider, provider_event_id)
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_webhook_events_status "
        "ON webhook_events(status, received_at)"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            storage_path TEXT NOT NULL,
            file_name TEXT NOT NULL,
            fingerprint TEXT NOT NULL,
            size INTEGER NOT NULL,
            mime_type TEXT NOT NULL,
            source TEXT NOT NULL,
            retention_period TEXT NOT NULL,
            blockchain_txid TEXT,
            metadata TEXT,
            created_at REAL NOT NULL
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_fingerprint ON documents(fingerprint)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id, created_at)"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            document_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            actor TEXT NOT NULL,
            metadata TEXT,
            timestamp REAL NOT NULL
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_log_document ON audit_log(document_id, id)"
    )
    op.execute(
        """
        CREATE TRIGGER IF NOT EXISTS audit_log_no_update
        BEFORE UPDATE ON audit_log
        BEGIN
            SELECT RAISE(ABORT, 'audit_log is append-only');
        END
        """
    )
    op.execute(
        """
        CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
        BEFORE DELETE ON audit_log
        BEGIN
            SELECT RAISE(ABORT, 'audit_log is append-only');
        END
        """
    )


def downgrade() -> None:
    """Drop all tables."""

    op.execute("DROP TRIGGER IF EXISTS audit_log_no_delete")
    op.execute("DROP TRIGGER IF EXISTS audit_log_no_update")
    op.execute("DROP TABLE IF EXISTS audit_log")
    op.execute("DROP TABLE IF EXISTS documents")
    op.execute("DROP TABLE IF EXISTS webhook_events")
    op.execute("DROP TABLE IF EXISTS oauth_states")
    op.execute("DROP TABLE IF EXISTS oauth_connections")
