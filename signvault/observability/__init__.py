"""
Observability for the SignVault service.

- Prometheus metrics for webhooks, provider calls, token refreshes and anchoring
- OpenTelemetry tracing around pipeline stages
- Structured logging with trace correlation
- Request instrumentation middleware for Starlette
"""

from signvault.observability.logging_config import (
    get_uvicorn_logging_config,
    setup_logging,
)
from signvault.observability.metrics import setup_metrics
from signvault.observability.middleware import ObservabilityMiddleware
from signvault.observability.tracing import setup_tracing

__all__ = [
    "setup_logging",
    "get_uvicorn_logging_config",
    "setup_metrics",
    "setup_tracing",
    "ObservabilityMiddleware",
]
