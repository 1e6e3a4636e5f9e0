"""
Prometheus metrics for the SignVault service.

Metrics are grouped by concern:

- HTTP server (RED)
- Webhook intake and pipeline outcomes
- Provider API calls and retries
- OAuth token refresh
- Vaulting and blockchain anchoring
- Database operations
"""

import logging

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

# =============================================================================
# HTTP Server Metrics
# =============================================================================

http_requests_total = Counter(
    "signvault_http_requests_total",
    "Total HTTP requests received",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "signvault_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "signvault_http_requests_in_progress",
    "Number of HTTP requests currently being processed",
    ["method", "endpoint"],
)

# =============================================================================
# Webhook Pipeline Metrics
# =============================================================================

webhook_events_received_total = Counter(
    "signvault_webhook_events_received_total",
    "Inbound webhook deliveries",
    ["provider", "outcome"],  # outcome: new | duplicate | rejected | error
)

webhook_events_completed_total = Counter(
    "signvault_webhook_events_completed_total",
    "Webhook events reaching a terminal status",
    ["provider", "status"],  # status: processed | failed
)

webhook_processing_duration_seconds = Histogram(
    "signvault_webhook_processing_duration_seconds",
    "Time from claim to terminal status",
    ["provider"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

webhook_queue_size = Gauge(
    "signvault_webhook_queue_size",
    "Events waiting for a pipeline worker",
)

# =============================================================================
# Provider API Metrics
# =============================================================================

provider_api_requests_total = Counter(
    "signvault_provider_api_requests_total",
    "Outbound provider API calls",
    ["provider", "operation", "status_code"],
)

provider_api_duration_seconds = Histogram(
    "signvault_provider_api_duration_seconds",
    "Provider API call latency in seconds",
    ["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

provider_api_retries_total = Counter(
    "signvault_provider_api_retries_total",
    "Provider API calls retried after a transient failure",
    ["provider", "reason"],
)

oauth_token_refresh_total = Counter(
    "signvault_oauth_token_refresh_total",
    "OAuth refresh-token grants",
    ["provider", "result"],  # result: success | rejected | error
)

# =============================================================================
# Vault and Anchoring Metrics
# =============================================================================

documents_vaulted_total = Counter(
    "signvault_documents_vaulted_total",
    "Documents written to the vault",
    ["source"],
)

document_bytes_vaulted_total = Counter(
    "signvault_document_bytes_vaulted_total",
    "Bytes written to the vault",
)

anchoring_attempts_total = Counter(
    "signvault_anchoring_attempts_total",
    "Blockchain anchoring attempts",
    ["result"],  # result: anchored | insufficient_funds | unavailable | error
)

anchoring_duration_seconds = Histogram(
    "signvault_anchoring_duration_seconds",
    "Time from submission to confirmation",
    buckets=(1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# =============================================================================
# Database Operation Metrics
# =============================================================================

db_operations_total = Counter(
    "signvault_db_operations_total",
    "Total database operations",
    ["db", "operation", "status"],
)

db_operation_duration_seconds = Histogram(
    "signvault_db_operation_duration_seconds",
    "Database operation latency in seconds",
    ["db", "operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)


def setup_metrics(port: int = 9090) -> None:
    """
    Start the dedicated Prometheus HTTP server.

    The /metrics endpoint is only exposed on this port, never on the public
    webhook port.
    """
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except OSError as e:
        if "Address already in use" in str(e):
            logger.warning(
                f"Metrics port {port} already in use (metrics server likely already running)"
            )
        else:
            logger.error(f"Failed to start metrics server on port {port}: {e}")
            raise


# =============================================================================
# Convenience Functions
# =============================================================================


def record_webhook_received(provider: str, outcome: str) -> None:
    webhook_events_received_total.labels(provider=provider, outcome=outcome).inc()


def record_webhook_completed(provider: str, status: str, duration: float) -> None:
    webhook_events_completed_total.labels(provider=provider, status=status).inc()
    webhook_processing_duration_seconds.labels(provider=provider).observe(duration)


def record_provider_api_call(
    provider: str, operation: str, status_code: int, duration: float
) -> None:
    """
    Record metrics for a provider API call.

    Args:
        provider: Provider name (docusign, pandadoc, signnow)
        operation: Logical operation (download, metadata, token, userinfo)
        status_code: HTTP status code, 0 for transport failures
        duration: Request duration in seconds
    """
    provider_api_requests_total.labels(
        provider=provider, operation=operation, status_code=str(status_code)
    ).inc()
    provider_api_duration_seconds.labels(
        provider=provider, operation=operation
    ).observe(duration)


def record_provider_api_retry(provider: str, reason: str) -> None:
    provider_api_retries_total.labels(provider=provider, reason=reason).inc()


def record_token_refresh(provider: str, result: str) -> None:
    oauth_token_refresh_total.labels(provider=provider, result=result).inc()


def record_document_vaulted(source: str, size: int) -> None:
    documents_vaulted_total.labels(source=source).inc()
    document_bytes_vaulted_total.inc(size)


def record_anchoring_attempt(result: str, duration: float | None = None) -> None:
    anchoring_attempts_total.labels(result=result).inc()
    if duration is not None:
        anchoring_duration_seconds.observe(duration)


def record_db_operation(
    db: str, operation: str, duration: float, status: str = "success"
) -> None:
    """
    Record metrics for a database operation.

    Args:
        db: Database type (sqlite)
        operation: Operation type (insert, select, update, delete)
        duration: Operation duration in seconds
        status: "success" or "error"
    """
    db_operations_total.labels(db=db, operation=operation, status=status).inc()
    db_operation_duration_seconds.labels(db=db, operation=operation).observe(duration)


def update_webhook_queue_size(size: int) -> None:
    webhook_queue_size.set(size)
