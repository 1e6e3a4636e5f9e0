"""SQLite persistence for connections, OAuth states, webhook events, documents
and the audit log.

Every public coroutine opens its own short-lived ``aiosqlite`` connection, so a
single ``VaultStorage`` instance can be shared by the HTTP handlers and all
pipeline workers. Provider tokens are Fernet-encrypted at rest when a key is
configured.
"""

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite
from cryptography.fernet import Fernet

from signvault.errors import StorageWriteError
from signvault.models import (
    AuditEventType,
    AuditLogEntry,
    Document,
    EventStatus,
    OAuthConnection,
    OAuthState,
    WebhookEvent,
    from_timestamp,
)
from signvault.observability.metrics import record_db_operation

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_connections_user_provider "
    "ON oauth_connections(user_id, provider, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_connections_account "
    "ON oauth_connections(provider, provider_account_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_states (
        state TEXT PRIMARY KEY,
        provider TEXT NOT NULL,
        user_id TEXT NOT NULL,
        code_verifier TEXT,
        created_at REAL NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_status "
    "ON webhook_events(status, received_at)",
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_fingerprint ON documents(fingerprint)",
    "CREATE INDEX IF NOT EXISTS idx_documents_user ON documents(user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        actor TEXT NOT NULL,
        metadata TEXT,
        timestamp REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_log_document ON audit_log(document_id, id)",
    """
    CREATE TRIGGER IF NOT EXISTS audit_log_no_update
    BEFORE UPDATE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
    BEFORE DELETE ON audit_log
    BEGIN
        SELECT RAISE(ABORT, 'audit_log is append-only');
    END
    """,
]


class VaultStorage:
    """Persistent state for the capture-and-anchor pipeline."""

    def __init__(self, db_path: str, encryption_key: bytes | None = None):
        """
        Args:
            db_path: Path to SQLite database file
            encryption_key: Optional Fernet key (base64url-encoded 32 bytes).
                          Without it tokens are stored as plain UTF-8.
        """
        self.db_path = db_path
        self.cipher = Fernet(encryption_key) if encryption_key else None
        self._initialized = False

    @classmethod
    def from_settings(cls, settings) -> "VaultStorage":
        encryption_key = None
        if settings.token_encryption_key:
            encryption_key = settings.token_encryption_key.encode()
            try:
                Fernet(encryption_key)
            except Exception as e:
                raise ValueError(
                    f"Invalid TOKEN_ENCRYPTION_KEY: {e}. "
                    "Must be a valid Fernet key (base64url-encoded 32 bytes)."
                ) from e
        return cls(db_path=settings.database_path, encryption_key=encryption_key)

    async def initialize(self) -> None:
        """Create schema if missing."""
        if self._initialized:
            return

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA_STATEMENTS:
                await db.execute(statement)
            await db.commit()

        os.chmod(self.db_path, 0o600)

        self._initialized = True
        logger.info(f"Initialized vault storage at {self.db_path}")

    async def ping(self) -> bool:
        """Readiness check: the database answers a trivial query."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("SELECT 1")
            return True
        except Exception as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    @asynccontextmanager
    async def _connect(self, operation: str):
        if not self._initialized:
            await self.initialize()

        start_time = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except Exception:
            record_db_operation("sqlite", operation, time.time() - start_time, "error")
            raise
        record_db_operation("sqlite", operation, time.time() - start_time)

    def _encrypt(self, value: Optional[str]) -> Optional[bytes]:
        if value is None:
            return None
        if self.cipher:
            return self.cipher.encrypt(value.encode())
        return value.encode()

    def _decrypt(self, value: Optional[bytes]) -> Optional[str]:
        if value is None:
            return None
        if self.cipher:
            return self.cipher.decrypt(value).decode()
        return bytes(value).decode()

    # ------------------------------------------------------------------
    # OAuth connections
    # ------------------------------------------------------------------

    def _row_to_connection(self, row: aiosqlite.Row) -> OAuthConnection:
        return OAuthConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            provider_account_id=row["provider_account_id"],
            account_name=row["account_name"],
            account_email=row["account_email"],
            access_token=self._decrypt(row["encrypted_access_token"]),
            refresh_token=self._decrypt(row["encrypted_refresh_token"]),
            expires_at=from_timestamp(row["expires_at"]),
            base_uri=row["base_uri"],
            needs_reconnect=bool(row["needs_reconnect"]),
            created_at=from_timestamp(row["created_at"]),
            updated_at=from_timestamp(row["updated_at"]),
        )

    async def upsert_connection(
        self,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        provider_account_id: Optional[str] = None,
        account_name: Optional[str] = None,
        account_email: Optional[str] = None,
        base_uri: Optional[str] = None,
    ) -> OAuthConnection:
        """
        Create or replace the active connection for (user, provider).

        The most recently created row for the pair is updated in place; a new
        row is only inserted when the user has never connected this provider.
        Re-authorizing clears any reconnect flag.
        """
        now = time.time()
        values = (
            provider_account_id,
            account_name,
            account_email,
            self._encrypt(access_token),
            self._encrypt(refresh_token),
            expires_at.timestamp(),
            base_uri,
        )

        async with self._connect("upsert") as db:
            async with db.execute(
                "SELECT id FROM oauth_connections WHERE user_id = ? AND provider = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (user_id, provider),
            ) as cursor:
                existing = await cursor.fetchone()

            if existing:
                connection_id = existing["id"]
                await db.execute(
                    """
                    UPDATE oauth_connections
                    SET provider_account_id = ?, account_name = ?, account_email = ?,
                        encrypted_access_token = ?, encrypted_refresh_token = ?,
                        expires_at = ?, base_uri = ?, needs_reconnect = 0, updated_at = ?
                    WHERE id = ?
                    """,
                    (*values, now, connection_id),
                )
            else:
                cursor = await db.execute(
                    """
                    INSERT INTO oauth_connections
                    (provider_account_id, account_name, account_email,
                     encrypted_access_token, encrypted_refresh_token, expires_at,
                     base_uri, user_id, provider, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (*values, user_id, provider, now, now),
                )
                connection_id = cursor.lastrowid
            await db.commit()

        logger.info(
            f"Stored {provider} connection {connection_id} for user {user_id}"
            + (f" (account {provider_account_id})" if provider_account_id else "")
        )
        connection = await self.get_connection(connection_id)
        if connection is None:
            raise StorageWriteError(
                f"{provider} connection {connection_id} for user {user_id} "
                "was not readable after commit"
            )
        return connection

    async def get_connection(self, connection_id: int) -> Optional[OAuthConnection]:
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM oauth_connections WHERE id = ?", (connection_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_connection(row) if row else None

    async def get_connection_for_user(
        self, user_id: str, provider: str
    ) -> Optional[OAuthConnection]:
        """Most recently created connection for (user, provider)."""
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM oauth_connections WHERE user_id = ? AND provider = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (user_id, provider),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_connection(row) if row else None

    async def find_connection_by_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[OAuthConnection]:
        """Most recently created connection for a provider-side account id."""
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM oauth_connections "
                "WHERE provider = ? AND provider_account_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (provider, provider_account_id),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_connection(row) if row else None

    async def update_connection_tokens(
        self,
        connection_id: int,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
    ) -> Optional[OAuthConnection]:
        async with self._connect("update") as db:
            await db.execute(
                """
                UPDATE oauth_connections
                SET encrypted_access_token = ?, encrypted_refresh_token = ?,
                    expires_at = ?, needs_reconnect = 0, updated_at = ?
                WHERE id = ?
                """,
                (
                    self._encrypt(access_token),
                    self._encrypt(refresh_token),
                    expires_at.timestamp(),
                    time.time(),
                    connection_id,
                ),
            )
            await db.commit()
        return await self.get_connection(connection_id)

    async def flag_connection_for_reconnect(self, connection_id: int) -> bool:
        async with self._connect("update") as db:
            cursor = await db.execute(
                "UPDATE oauth_connections SET needs_reconnect = 1, updated_at = ? "
                "WHERE id = ?",
                (time.time(), connection_id),
            )
            await db.commit()
            flagged = cursor.rowcount > 0
        if flagged:
            logger.warning(f"Connection {connection_id} flagged for reconnection")
        return flagged

    async def delete_connection(self, connection_id: int) -> bool:
        async with self._connect("delete") as db:
            cursor = await db.execute(
                "DELETE FROM oauth_connections WHERE id = ?", (connection_id,)
            )
            await db.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted connection {connection_id}")
        return deleted

    # ------------------------------------------------------------------
    # OAuth states
    # ------------------------------------------------------------------

    async def store_oauth_state(
        self,
        state: str,
        provider: str,
        user_id: str,
        code_verifier: Optional[str] = None,
        ttl_seconds: int = 600,
    ) -> None:
        now = time.time()
        async with self._connect("insert") as db:
            await db.execute(
                """
                INSERT INTO oauth_states
                (state, provider, user_id, code_verifier, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (state, provider, user_id, code_verifier, now, now + ttl_seconds),
            )
            await db.commit()
        logger.debug(f"Stored OAuth state for {provider} user {user_id}")

    async def consume_oauth_state(self, state: str) -> Optional[OAuthState]:
        """
        Look up and delete an OAuth state in one step.

        Returns None when the state is unknown, already consumed, or expired.
        Only the caller whose DELETE removed the row gets the record back, so
        two concurrent callbacks with the same state cannot both succeed.
        """
        async with self._connect("delete") as db:
            async with db.execute(
                "SELECT * FROM oauth_states WHERE state = ?", (state,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None

            cursor = await db.execute(
                "DELETE FROM oauth_states WHERE state = ?", (state,)
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None

        if row["expires_at"] < time.time():
            logger.warning(f"OAuth state for {row['provider']} expired before use")
            return None

        return OAuthState(
            state=row["state"],
            provider=row["provider"],
            user_id=row["user_id"],
            code_verifier=row["code_verifier"],
            created_at=from_timestamp(row["created_at"]),
            expires_at=from_timestamp(row["expires_at"]),
        )

    async def cleanup_expired_states(self) -> int:
        async with self._connect("delete") as db:
            cursor = await db.execute(
                "DELETE FROM oauth_states WHERE expires_at < ?", (time.time(),)
            )
            await db.commit()
            deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired OAuth state(s)")
        return deleted

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    def _row_to_event(self, row: aiosqlite.Row) -> WebhookEvent:
        return WebhookEvent(
            id=row["id"],
            provider=row["provider"],
            provider_event_id=row["provider_event_id"],
            event_type=row["event_type"],
            raw_payload=row["raw_payload"],
            status=EventStatus(row["status"]),
            processing_error=row["processing_error"],
            document_id=row["document_id"],
            received_at=from_timestamp(row["received_at"]),
            claimed_at=from_timestamp(row["claimed_at"]),
            processed_at=from_timestamp(row["processed_at"]),
        )

    async def insert_webhook_event(
        self,
        provider: str,
        provider_event_id: str,
        raw_payload: str,
        event_type: Optional[str] = None,
    ) -> tuple[int, bool]:
        """
        Insert an event row unless (provider, provider_event_id) already exists.

        Returns:
            (event record id, True if this call inserted the row)
        """
        async with self._connect("insert") as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO webhook_events
                (provider, provider_event_id, event_type, raw_payload, status, received_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    provider,
                    provider_event_id,
                    event_type,
                    raw_payload,
                    EventStatus.RECEIVED.value,
                    time.time(),
                ),
            )
            await db.commit()
            inserted = cursor.rowcount == 1

            async with db.execute(
                "SELECT id FROM webhook_events WHERE provider = ? AND provider_event_id = ?",
                (provider, provider_event_id),
            ) as cursor:
                row = await cursor.fetchone()

        return row["id"], inserted

    async def claim_webhook_event(
        self, event_id: int, lease_seconds: Optional[float] = None
    ) -> bool:
        """
        Compare-and-swap ``received -> processing``.

        With ``lease_seconds`` a ``processing`` row whose claim is older than the
        lease is also taken over. Returns True only for the caller that won.
        """
        now = time.time()
        query = (
            "UPDATE webhook_events SET status = ?, claimed_at = ? "
            "WHERE id = ? AND (status = ?"
        )
        params: list[Any] = [
            EventStatus.PROCESSING.value,
            now,
            event_id,
            EventStatus.RECEIVED.value,
        ]
        if lease_seconds is not None:
            query += " OR (status = ? AND claimed_at < ?)"
            params.extend([EventStatus.PROCESSING.value, now - lease_seconds])
        query += ")"

        async with self._connect("update") as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount == 1

    async def finish_webhook_event(
        self,
        event_id: int,
        status: EventStatus,
        error: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> bool:
        """
        Move a non-terminal event to ``processed`` or ``failed``.

        Terminal rows are left untouched, so repeating the call is harmless.
        Returns True if this call changed the row.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal event status")

        async with self._connect("update") as db:
            cursor = await db.execute(
                """
                UPDATE webhook_events
                SET status = ?, processing_error = ?,
                    document_id = COALESCE(?, document_id), processed_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    status.value,
                    error,
                    document_id,
                    time.time(),
                    event_id,
                    EventStatus.RECEIVED.value,
                    EventStatus.PROCESSING.value,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def get_webhook_event(self, event_id: int) -> Optional[WebhookEvent]:
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM webhook_events WHERE id = ?", (event_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_event(row) if row else None

    async def get_webhook_event_by_key(
        self, provider: str, provider_event_id: str
    ) -> Optional[WebhookEvent]:
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM webhook_events WHERE provider = ? AND provider_event_id = ?",
                (provider, provider_event_id),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_event(row) if row else None

    async def list_unfinished_webhook_events(
        self, limit: int = 100
    ) -> list[WebhookEvent]:
        """Events still ``received`` or ``processing``, oldest first."""
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM webhook_events WHERE status IN (?, ?) "
                "ORDER BY received_at ASC LIMIT ?",
                (EventStatus.RECEIVED.value, EventStatus.PROCESSING.value, limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _row_to_document(self, row: aiosqlite.Row) -> Document:
        return Document(
            id=row["id"],
            user_id=row["user_id"],
            storage_path=row["storage_path"],
            file_name=row["file_name"],
            fingerprint=row["fingerprint"],
            size=row["size"],
            mime_type=row["mime_type"],
            source=row["source"],
            retention_period=row["retention_period"],
            blockchain_txid=row["blockchain_txid"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=from_timestamp(row["created_at"]),
        )

    async def insert_document(self, document: Document) -> None:
        async with self._connect("insert") as db:
            await db.execute(
                """
                INSERT INTO documents
                (id, user_id, storage_path, file_name, fingerprint, size, mime_type,
                 source, retention_period, blockchain_txid, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.user_id,
                    document.storage_path,
                    document.file_name,
                    document.fingerprint,
                    document.size,
                    document.mime_type,
                    document.source,
                    document.retention_period,
                    document.blockchain_txid,
                    json.dumps(document.metadata, default=str),
                    document.created_at.timestamp(),
                ),
            )
            await db.commit()

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_document(row) if row else None

    async def find_documents_by_fingerprint(self, fingerprint: str) -> list[Document]:
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM documents WHERE fingerprint = ? ORDER BY created_at DESC",
                (fingerprint.lower(),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_document(row) for row in rows]

    async def list_documents_for_user(
        self, user_id: str, limit: int = 100
    ) -> list[Document]:
        """A user's documents, newest first."""
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM documents WHERE user_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_document(row) for row in rows]

    async def set_document_txid(self, document_id: str, txid: str) -> bool:
        async with self._connect("update") as db:
            cursor = await db.execute(
                "UPDATE documents SET blockchain_txid = ? WHERE id = ?",
                (txid, document_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Audit log (insert and read only)
    # ------------------------------------------------------------------

    async def insert_audit_entry(
        self,
        document_id: str,
        event_type: AuditEventType,
        actor: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        timestamp = time.time()
        async with self._connect("insert") as db:
            cursor = await db.execute(
                """
                INSERT INTO audit_log (document_id, event_type, actor, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    event_type.value,
                    actor,
                    json.dumps(metadata or {}, default=str),
                    timestamp,
                ),
            )
            await db.commit()
            entry_id = cursor.lastrowid

        return AuditLogEntry(
            id=entry_id,
            document_id=document_id,
            event_type=event_type,
            actor=actor,
            metadata=metadata or {},
            timestamp=from_timestamp(timestamp),
        )

    async def list_audit_entries(self, document_id: str) -> list[AuditLogEntry]:
        """All entries for a document, newest first (insertion order reversed)."""
        async with self._connect("select") as db:
            async with db.execute(
                "SELECT * FROM audit_log WHERE document_id = ? ORDER BY id DESC",
                (document_id,),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            AuditLogEntry(
                id=row["id"],
                document_id=row["document_id"],
                event_type=AuditEventType(row["event_type"]),
                actor=row["actor"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
                timestamp=from_timestamp(row["timestamp"]),
            )
            for row in rows
        ]


def generate_encryption_key() -> str:
    """Generate a new Fernet key for TOKEN_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode()
