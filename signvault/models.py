"""Persisted entities of the capture-and-anchor pipeline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.PROCESSED, EventStatus.FAILED)


class AuditEventType(str, Enum):
    VAULTED = "vaulted"
    BLOCKCHAIN_ANCHORED = "blockchain_anchored"
    BLOCKCHAIN_ANCHOR_FAILED = "blockchain_anchor_failed"
    VERIFIED = "verified"
    VIEWED = "viewed"
    DOWNLOADED = "downloaded"
    SHARED = "shared"


SYSTEM_ACTOR = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class OAuthConnection(BaseModel):
    """One provider authorization held on behalf of a user."""

    id: int
    user_id: str
    provider: str
    provider_account_id: Optional[str] = None
    account_name: Optional[str] = None
    account_email: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    base_uri: Optional[str] = None
    needs_reconnect: bool = False
    created_at: datetime
    updated_at: datetime

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (self.expires_at - now).total_seconds() <= seconds

    def summary(self) -> dict[str, Any]:
        """Connection fields safe to return to a browser."""
        return {
            "provider": self.provider,
            "user_id": self.user_id,
            "account_id": self.provider_account_id,
            "account_name": self.account_name,
            "account_email": self.account_email,
            "expires_at": self.expires_at.isoformat(),
            "needs_reconnect": self.needs_reconnect,
        }


class OAuthState(BaseModel):
    state: str
    provider: str
    user_id: str
    code_verifier: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class WebhookEvent(BaseModel):
    id: int
    provider: str
    provider_event_id: str
    event_type: Optional[str] = None
    raw_payload: str
    status: EventStatus
    processing_error: Optional[str] = None
    document_id: Optional[str] = None
    received_at: datetime
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class Document(BaseModel):
    id: str
    user_id: str
    storage_path: str
    file_name: str
    fingerprint: str = Field(description="SHA-256 of the stored bytes, lowercase hex")
    size: int
    mime_type: str = "application/pdf"
    source: str
    retention_period: str
    blockchain_txid: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AuditLogEntry(BaseModel):
    id: int
    document_id: str
    event_type: AuditEventType
    actor: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
