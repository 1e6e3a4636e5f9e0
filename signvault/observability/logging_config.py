"""
Logging configuration for the SignVault service.

- Structured JSON logging with python-json-logger
- Trace context injection (trace_id, span_id) for correlation with spans
- Text format for local development
"""

import logging
import sys
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from signvault.observability.tracing import get_trace_context

_QUIET_PATHS = ("/health/live", "/health/ready", "/metrics")


class HealthCheckFilter(logging.Filter):
    """Drop uvicorn access lines for health checks and the metrics scrape."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(path in message for path in _QUIET_PATHS)


class TraceContextFormatter(JsonFormatter):
    """
    JSON formatter that injects OpenTelemetry trace context into log records.
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        trace_context = get_trace_context()
        if trace_context:
            log_record["trace_id"] = trace_context.get("trace_id")
            log_record["span_id"] = trace_context.get("span_id")

        log_record["timestamp"] = self.formatTime(record)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["message"] = record.getMessage()

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


class TraceContextTextFormatter(logging.Formatter):
    """
    Text formatter that appends trace context.

    Format: LEVEL [timestamp] logger - message [trace_id=xxx span_id=yyy]
    """

    def format(self, record: logging.LogRecord) -> str:
        base_message = super().format(record)

        trace_context = get_trace_context()
        if trace_context:
            trace_id = trace_context.get("trace_id", "")
            span_id = trace_context.get("span_id", "")
            return f"{base_message} [trace_id={trace_id} span_id={span_id}]"

        return base_message


def _build_formatter(log_format: str, include_trace_context: bool) -> logging.Formatter:
    if log_format.lower() == "json":
        formatter_class = TraceContextFormatter if include_trace_context else JsonFormatter
        return formatter_class(
            "%(timestamp)s %(level)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

    formatter_class = (
        TraceContextTextFormatter if include_trace_context else logging.Formatter
    )
    return formatter_class(
        "%(levelname)s [%(asctime)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(
    log_format: str = "json",
    log_level: str = "INFO",
    include_trace_context: bool = True,
) -> None:
    """
    Configure root logging for the service.

    Args:
        log_format: "json" or "text"
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_trace_context: Whether to include trace ids in each line
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(_build_formatter(log_format, include_trace_context))
    root_logger.addHandler(console_handler)

    configure_component_loggers(log_level)

    root_logger.info(
        f"Logging configured: format={log_format}, level={log_level}, "
        f"trace_context={include_trace_context}"
    )


def configure_component_loggers(default_level: str = "INFO") -> None:
    """Set per-component levels; HTTP and RPC client libraries stay quiet."""
    logger_levels = {
        "signvault": default_level,
        "signvault.pipeline": default_level,
        "signvault.providers": default_level,
        "signvault.anchoring": default_level,
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "web3": "WARNING",
        "aiosqlite": "WARNING",
        "uvicorn": "INFO",
        "uvicorn.access": "INFO",
        "uvicorn.error": "INFO",
        "opentelemetry": "WARNING",
    }

    for logger_name, level in logger_levels.items():
        logging.getLogger(logger_name).setLevel(
            getattr(logging, level.upper(), logging.INFO)
        )


def get_uvicorn_logging_config(
    log_format: str = "json",
    log_level: str = "INFO",
    include_trace_context: bool = True,
) -> dict:
    """
    Build a uvicorn ``log_config`` dict that uses the same formatters.
    """
    module = "signvault.observability.logging_config"
    if log_format.lower() == "json":
        formatter_class = (
            f"{module}.TraceContextFormatter"
            if include_trace_context
            else "pythonjsonlogger.json.JsonFormatter"
        )
        format_string = "%(timestamp)s %(level)s %(name)s %(message)s"
    else:
        formatter_class = (
            f"{module}.TraceContextTextFormatter"
            if include_trace_context
            else "logging.Formatter"
        )
        format_string = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"

    quiet = {"handlers": ["default"], "level": "WARNING", "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": formatter_class,
                "format": format_string,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "filters": {
            "health_check_filter": {"()": f"{module}.HealthCheckFilter"},
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
            "access": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "filters": ["health_check_filter"],
            },
        },
        "loggers": {
            "": {"handlers": ["default"], "level": log_level.upper()},
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {
                "handlers": ["access"],
                "level": "INFO",
                "propagate": False,
            },
            "uvicorn.error": {
                "handlers": ["default"],
                "level": "INFO",
                "propagate": False,
            },
            "httpx": dict(quiet),
            "httpcore": dict(quiet),
            "web3": dict(quiet),
            "opentelemetry": dict(quiet),
        },
    }
