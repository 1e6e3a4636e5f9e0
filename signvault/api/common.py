"""Helpers shared by the route modules."""

from typing import Optional

from starlette.requests import Request

ANONYMOUS_ACTOR = "anonymous"


def request_actor(request: Request) -> str:
    """Identity of the caller for audit entries.

    Set by an upstream authentication middleware when one is installed.
    """
    if "user" in request.scope and request.user.is_authenticated:
        return request.user.display_name
    return ANONYMOUS_ACTOR


def error_response_body(error: str, message: str) -> dict[str, str]:
    return {"error": error, "message": message}


def request_user_id(request: Request) -> Optional[str]:
    """Owner of documents listed or uploaded by this request.

    The authenticated user when there is one, otherwise the ``user_id``
    query parameter.
    """
    if "user" in request.scope and request.user.is_authenticated:
        return request.user.display_name
    return request.query_params.get("user_id") or None
