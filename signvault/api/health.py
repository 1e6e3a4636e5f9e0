"""Kubernetes-style liveness and readiness endpoints."""

from starlette.requests import Request
from starlette.responses import JSONResponse


def health_live(request: Request) -> JSONResponse:
    """Liveness: the process is running."""
    return JSONResponse({"status": "alive"})


async def health_ready(request: Request) -> JSONResponse:
    """Readiness: the database answers and the worker pool is running."""
    checks = {}
    is_ready = True

    if await request.app.state.storage.ping():
        checks["database"] = "ok"
    else:
        checks["database"] = "error: unreachable"
        is_ready = False

    if getattr(request.app.state, "webhook_send_stream", None) is not None:
        checks["workers"] = "ok"
    else:
        checks["workers"] = "error: not started"
        is_ready = False

    checks["anchoring"] = (
        "enabled" if request.app.state.anchoring.ledger is not None else "disabled"
    )

    return JSONResponse(
        {"status": "ready" if is_ready else "not_ready", "checks": checks},
        status_code=200 if is_ready else 503,
    )
