"""Event deduplication and the received -> processing -> terminal state machine."""

import logging
from dataclasses import dataclass
from typing import Optional

from signvault.models import EventStatus
from signvault.observability.metrics import record_webhook_received
from signvault.storage import VaultStorage

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_LEASE_SECONDS = 900


@dataclass
class RecordResult:
    is_new: bool
    event_record_id: int


class EventRecorder:
    def __init__(
        self, storage: VaultStorage, claim_lease: float = DEFAULT_CLAIM_LEASE_SECONDS
    ):
        self.storage = storage
        self.claim_lease = claim_lease

    async def record_and_claim(
        self,
        provider: str,
        provider_event_id: str,
        raw_payload: bytes,
        event_type: Optional[str] = None,
    ) -> RecordResult:
        """
        Durably record a delivery and claim it for processing.

        Must run before any network call on the delivery. A redelivered
        (provider, provider_event_id) returns ``is_new=False`` and the caller
        does nothing further.
        """
        event_id, inserted = await self.storage.insert_webhook_event(
            provider,
            provider_event_id,
            raw_payload.decode("utf-8", errors="replace"),
            event_type=event_type,
        )
        if not inserted:
            logger.info(
                f"Duplicate {provider} delivery {provider_event_id} "
                f"(event record {event_id}), ignoring"
            )
            record_webhook_received(provider, "duplicate")
            return RecordResult(is_new=False, event_record_id=event_id)

        claimed = await self.storage.claim_webhook_event(event_id)
        if not claimed:
            # A sweep got there between our insert and claim
            logger.info(f"Event record {event_id} was claimed by another worker")
            record_webhook_received(provider, "duplicate")
            return RecordResult(is_new=False, event_record_id=event_id)

        record_webhook_received(provider, "new")
        logger.debug(
            f"Recorded {provider} event {provider_event_id} as record {event_id}"
        )
        return RecordResult(is_new=True, event_record_id=event_id)

    async def claim(self, event_record_id: int, lease: Optional[float] = None) -> bool:
        """Claim a ``received`` event, or one whose processing lease has expired."""
        return await self.storage.claim_webhook_event(
            event_record_id,
            lease_seconds=self.claim_lease if lease is None else lease,
        )

    async def mark_processed(
        self,
        event_record_id: int,
        status: EventStatus,
        error: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> bool:
        """Set the terminal status. Safe to call more than once."""
        changed = await self.storage.finish_webhook_event(
            event_record_id, status, error=error, document_id=document_id
        )
        if not changed:
            logger.debug(f"Event record {event_record_id} already terminal")
        return changed
