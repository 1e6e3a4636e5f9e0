"""Unit tests for EventRecorder: dedup, claim and terminal status."""

import pytest

from signvault.models import EventStatus
from signvault.pipeline.recorder import EventRecorder

pytestmark = pytest.mark.unit


@pytest.fixture
def recorder(temp_storage):
    return EventRecorder(temp_storage, claim_lease=60)


async def test_new_event_is_claimed(recorder, temp_storage):
    result = await recorder.record_and_claim("signnow", "sn-1", b'{"x": 1}')

    assert result.is_new is True
    event = await temp_storage.get_webhook_event(result.event_record_id)
    assert event.status == EventStatus.PROCESSING
    assert event.raw_payload == '{"x": 1}'


async def test_duplicate_is_not_new(recorder):
    first = await recorder.record_and_claim("signnow", "sn-1", b"{}")
    second = await recorder.record_and_claim("signnow", "sn-1", b"{}")

    assert second.is_new is False
    assert second.event_record_id == first.event_record_id


async def test_non_utf8_payload_is_stored(recorder, temp_storage):
    result = await recorder.record_and_claim("signnow", "sn-2", b"\xff\xfe{")
    event = await temp_storage.get_webhook_event(result.event_record_id)
    assert event.raw_payload.endswith("{")


async def test_live_claim_cannot_be_taken_by_a_sweep(recorder):
    result = await recorder.record_and_claim("signnow", "sn-1", b"{}")
    assert await recorder.claim(result.event_record_id) is False


async def test_expired_claim_can_be_taken(recorder):
    result = await recorder.record_and_claim("signnow", "sn-1", b"{}")
    assert await recorder.claim(result.event_record_id, lease=-1) is True


async def test_mark_processed_is_idempotent(recorder, temp_storage):
    result = await recorder.record_and_claim("signnow", "sn-1", b"{}")

    assert await recorder.mark_processed(
        result.event_record_id, EventStatus.PROCESSED, document_id="d-1"
    )
    assert not await recorder.mark_processed(
        result.event_record_id, EventStatus.PROCESSED, document_id="d-1"
    )

    event = await temp_storage.get_webhook_event(result.event_record_id)
    assert event.status == EventStatus.PROCESSED
    assert event.document_id == "d-1"
