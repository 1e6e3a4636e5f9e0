"""Webhook pipeline: record and claim, then process out-of-band."""

from .processor import WebhookProcessor
from .recorder import EventRecorder, RecordResult
from .worker import WebhookJob, processor_task

__all__ = [
    "EventRecorder",
    "RecordResult",
    "WebhookJob",
    "WebhookProcessor",
    "processor_task",
]
