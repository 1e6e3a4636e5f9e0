"""Provider connection routes: start authorization and handle the callback."""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse

from signvault.api.common import error_response_body
from signvault.errors import AuthError, OAuthStateError, TransientProviderError

logger = logging.getLogger(__name__)


def _get_adapter(request: Request):
    provider = request.path_params["provider"].lower()
    return provider, request.app.state.providers.get(provider)


async def oauth_authorize(request: Request):
    """GET /oauth/{provider}/authorize?user_id= - redirect to the provider."""
    provider, adapter = _get_adapter(request)
    if adapter is None:
        return JSONResponse(
            error_response_body("unknown_provider", f"No provider named {provider}"),
            status_code=404,
        )

    user_id = request.query_params.get("user_id")
    if not user_id:
        return JSONResponse(
            error_response_body("invalid_request", "user_id is required"),
            status_code=400,
        )

    try:
        auth_request = await request.app.state.oauth_flow.start_authorization(
            adapter, user_id
        )
    except AuthError as e:
        return JSONResponse(
            error_response_body("provider_not_configured", str(e)), status_code=400
        )

    if "application/json" in request.headers.get("accept", ""):
        return JSONResponse(
            {
                "authorization_url": auth_request.authorization_url,
                "state": auth_request.state,
            }
        )
    return RedirectResponse(auth_request.authorization_url, status_code=302)


async def oauth_callback(request: Request) -> JSONResponse:
    """GET /oauth/{provider}/callback?code=&state= - complete the connection."""
    provider, adapter = _get_adapter(request)
    if adapter is None:
        return JSONResponse(
            error_response_body("unknown_provider", f"No provider named {provider}"),
            status_code=404,
        )

    params = request.query_params
    if params.get("error"):
        logger.warning(
            f"{provider} authorization denied: {params.get('error')} "
            f"{params.get('error_description', '')}"
        )
        return JSONResponse(
            error_response_body(
                params["error"], params.get("error_description", "Authorization denied")
            ),
            status_code=400,
        )

    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        return JSONResponse(
            error_response_body("invalid_request", "code and state are required"),
            status_code=400,
        )

    try:
        connection = await request.app.state.oauth_flow.handle_callback(
            adapter, code, state
        )
    except OAuthStateError as e:
        logger.warning(f"{provider} callback rejected: {e}")
        return JSONResponse(
            error_response_body("invalid_state", str(e)), status_code=400
        )
    except TransientProviderError as e:
        return JSONResponse(
            error_response_body("provider_unavailable", str(e)), status_code=502
        )
    except AuthError as e:
        return JSONResponse(
            error_response_body("authorization_failed", str(e)), status_code=400
        )

    return JSONResponse({"status": "connected", "connection": connection.summary()})
