"""
OpenTelemetry tracing for the SignVault service.

Spans are created around each pipeline stage (claim, token, download, vault,
anchor) so a single webhook delivery can be followed end to end. When tracing
has not been set up every helper here is a no-op.
"""

import logging
from contextlib import contextmanager
from typing import Any

from importlib_metadata import PackageNotFoundError, version
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode, Tracer

logger = logging.getLogger(__name__)

_tracer: Tracer | None = None

# Attribute keys that must never reach an exporter
_SENSITIVE_KEYS = frozenset(
    {"access_token", "refresh_token", "client_secret", "private_key", "code"}
)


def _package_version() -> str:
    try:
        return version("signvault")
    except PackageNotFoundError:
        return "unknown"


def setup_tracing(
    service_name: str = "signvault",
    otlp_endpoint: str | None = None,
    otlp_verify_ssl: bool = False,
    sampling_rate: float = 1.0,
) -> Tracer:
    """
    Initialize OpenTelemetry tracing with an optional OTLP exporter.

    Args:
        service_name: Service name attached to every span
        otlp_endpoint: OTLP gRPC endpoint (e.g. "http://otel-collector:4317").
                      If None, spans are generated but not exported.
        otlp_verify_ssl: Enable TLS verification for otlp_endpoint
        sampling_rate: Ratio of traces to keep (0.0-1.0)

    Returns:
        Tracer instance for creating custom spans
    """
    global _tracer

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": _package_version(),
        }
    )
    provider = TracerProvider(
        resource=resource, sampler=TraceIdRatioBased(sampling_rate)
    )

    if otlp_endpoint:
        try:
            otlp_exporter = OTLPSpanExporter(
                endpoint=otlp_endpoint, insecure=not otlp_verify_ssl
            )
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
            logger.info(
                f"OpenTelemetry tracing enabled with OTLP endpoint: {otlp_endpoint}"
            )
        except Exception as e:
            logger.warning(
                f"Failed to initialize OTLP exporter: {e}. Continuing without trace export."
            )
    else:
        logger.info("OpenTelemetry tracing initialized without OTLP exporter")

    trace.set_tracer_provider(provider)
    LoggingInstrumentor().instrument(set_logging_format=True)

    _tracer = trace.get_tracer(__name__)
    logger.info(f"OpenTelemetry tracing initialized for service: {service_name}")
    return _tracer


def get_tracer() -> Tracer | None:
    """Return the global tracer, or None if tracing is disabled."""
    return _tracer


@contextmanager
def trace_operation(
    operation_name: str,
    attributes: dict[str, Any] | None = None,
    record_exception: bool = True,
):
    """
    Context manager that wraps an operation in a span.

    Usage:
        with trace_operation("pipeline.download", {"provider": "docusign"}):
            ...

    Yields:
        The active span, or None when tracing is disabled
    """
    tracer = get_tracer()

    if tracer is None:
        yield None
        return

    with tracer.start_as_current_span(operation_name) as span:
        for key, value in (attributes or {}).items():
            if key in _SENSITIVE_KEYS or value is None:
                continue
            span.set_attribute(key, value)

        try:
            yield span
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            if record_exception:
                span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def trace_pipeline_stage(stage: str, provider: str, event_record_id: int | None):
    """Span for one stage of webhook processing."""
    return trace_operation(
        f"pipeline.{stage}",
        {"signvault.provider": provider, "signvault.event_record_id": event_record_id},
    )


def trace_provider_call(provider: str, operation: str):
    """Span for an outbound provider API call."""
    return trace_operation(
        f"provider.{provider}.{operation}",
        {"signvault.provider": provider, "provider.operation": operation},
    )


def add_span_attribute(key: str, value: Any) -> None:
    """Add an attribute to the current span (no-op when tracing is disabled)."""
    if _tracer is None:
        return
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute(key, value)


def get_trace_context() -> dict[str, str]:
    """
    Get current trace context as a dictionary.

    Returns:
        Dictionary with trace_id and span_id (or empty dict if tracing disabled or no active span)
    """
    if _tracer is None:
        return {}

    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        return {
            "trace_id": format(span_context.trace_id, "032x"),
            "span_id": format(span_context.span_id, "016x"),
        }
    return {}
