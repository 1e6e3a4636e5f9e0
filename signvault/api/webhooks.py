"""Inbound provider webhooks.

The handler's only job is to durably record each delivery and hand it to the
worker pool. Once a delivery is recorded the provider always gets a 200;
anything that goes wrong later is stored on the event record instead.
"""

import logging

import anyio
from starlette.requests import Request
from starlette.responses import JSONResponse

from signvault.api.common import error_response_body
from signvault.errors import describe_error
from signvault.observability.metrics import record_webhook_received
from signvault.pipeline.worker import WebhookJob

logger = logging.getLogger(__name__)


def _enqueue(request: Request, job: WebhookJob) -> bool:
    send_stream = getattr(request.app.state, "webhook_send_stream", None)
    if send_stream is None:
        logger.warning(
            f"Worker pool not running; event record {job.event_record_id} stays "
            "claimed until its lease expires"
        )
        return False
    try:
        send_stream.send_nowait(job)
    except anyio.WouldBlock:
        logger.warning(
            f"Webhook queue full; event record {job.event_record_id} stays "
            "claimed until its lease expires"
        )
        return False
    return True


async def receive_webhook(request: Request) -> JSONResponse:
    """POST /webhooks/{provider} - record a provider notification."""
    provider = request.path_params["provider"].lower()
    adapter = request.app.state.providers.get(provider)
    if adapter is None:
        logger.warning(f"Webhook for unknown provider {provider!r}")
        return JSONResponse(
            error_response_body("unknown_provider", f"No provider named {provider}"),
            status_code=404,
        )

    raw_body = await request.body()

    if not adapter.verify_signature(
        raw_body, dict(request.headers), dict(request.query_params)
    ):
        logger.warning(f"Rejected {provider} webhook with an invalid signature")
        record_webhook_received(provider, "rejected")
        return JSONResponse(
            error_response_body("invalid_signature", "Signature does not match"),
            status_code=401,
        )

    recorder = request.app.state.recorder
    events = []
    for body in adapter.split_deliveries(raw_body):
        provider_event_id, event_type = adapter.delivery_key(body)
        try:
            result = await recorder.record_and_claim(
                provider, provider_event_id, body, event_type=event_type
            )
        except Exception as e:
            # Not recorded: a non-2xx makes the provider redeliver
            logger.error(
                f"Failed to record {provider} event {provider_event_id}: "
                f"{describe_error(e)}",
                exc_info=True,
            )
            record_webhook_received(provider, "error")
            return JSONResponse(
                error_response_body("not_recorded", "Event could not be stored"),
                status_code=503,
            )

        if result.is_new:
            _enqueue(
                request, WebhookJob(provider, result.event_record_id, body)
            )
        events.append(
            {
                "event_record_id": result.event_record_id,
                "provider_event_id": provider_event_id,
                "duplicate": not result.is_new,
            }
        )

    all_duplicates = bool(events) and all(event["duplicate"] for event in events)
    return JSONResponse(
        {
            "status": "duplicate" if all_duplicates else "received",
            "events": events,
        }
    )
