"""Worker tasks that drain the in-process webhook queue."""

import logging
from dataclasses import dataclass

import anyio
from anyio.abc import TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream

from signvault.observability.metrics import update_webhook_queue_size
from signvault.pipeline.processor import WebhookProcessor

logger = logging.getLogger(__name__)


@dataclass
class WebhookJob:
    provider: str
    event_record_id: int
    raw_body: bytes


async def processor_task(
    worker_id: int,
    receive_stream: MemoryObjectReceiveStream[WebhookJob],
    shutdown_event: anyio.Event,
    processor: WebhookProcessor,
    *,
    task_status: TaskStatus = anyio.TASK_STATUS_IGNORED,
):
    """
    Process claimed webhook events from the stream until shutdown.

    Args:
        worker_id: Worker identifier for logging
        receive_stream: Stream of jobs handed off by the webhook route
        shutdown_event: Event signaling shutdown
        processor: Pipeline that drives each event to a terminal status
        task_status: Status object for signaling task readiness
    """
    logger.info(f"Webhook worker {worker_id} started")
    task_status.started()

    while not shutdown_event.is_set():
        try:
            # Timeout lets the loop notice shutdown
            with anyio.fail_after(1.0):
                job = await receive_stream.receive()

            update_webhook_queue_size(receive_stream.statistics().current_buffer_used)
            await processor.process(job.provider, job.event_record_id, job.raw_body)

        except TimeoutError:
            update_webhook_queue_size(receive_stream.statistics().current_buffer_used)
            continue

        except anyio.EndOfStream:
            logger.info(f"Webhook worker {worker_id}: queue closed, exiting")
            break

        except Exception as e:
            logger.error(f"Webhook worker {worker_id} error: {e}", exc_info=True)

    logger.info(f"Webhook worker {worker_id} stopped")
