"""Document upload, listing, access, history, manual anchoring and verification."""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from signvault.api.common import error_response_body, request_actor, request_user_id
from signvault.errors import StorageWriteError
from signvault.models import AuditEventType
from signvault.vault.blob_store import BlobStoreError
from signvault.vault.verification import verify_document
from signvault.vault.writer import DEFAULT_MIME_TYPE, MANUAL_UPLOAD_SOURCE

logger = logging.getLogger(__name__)


def _not_found(document_id: str) -> JSONResponse:
    return JSONResponse(
        error_response_body("not_found", f"Document {document_id} not found"),
        status_code=404,
    )


def _missing_user() -> JSONResponse:
    return JSONResponse(
        error_response_body("invalid_request", "user_id is required"),
        status_code=400,
    )


async def list_documents(request: Request) -> JSONResponse:
    """GET /api/v1/documents - the caller's documents, newest first."""
    user_id = request_user_id(request)
    if user_id is None:
        return _missing_user()

    documents = await request.app.state.storage.list_documents_for_user(user_id)
    return JSONResponse(
        {
            "user_id": user_id,
            "documents": [document.model_dump(mode="json") for document in documents],
        }
    )


async def upload_document(request: Request) -> JSONResponse:
    """POST /api/v1/documents?file_name= - vault the raw body, then anchor it."""
    user_id = request_user_id(request)
    if user_id is None:
        return _missing_user()

    file_name = request.query_params.get("file_name") or request.headers.get(
        "x-file-name"
    )
    if not file_name:
        return JSONResponse(
            error_response_body("invalid_request", "file_name is required"),
            status_code=400,
        )

    data = await request.body()
    if not data:
        return JSONResponse(
            error_response_body("invalid_request", "Request body is empty"),
            status_code=400,
        )

    content_type = request.headers.get("content-type", "").split(";")[0].strip()
    if not content_type or content_type == "application/octet-stream":
        content_type = DEFAULT_MIME_TYPE

    actor = request_actor(request)
    try:
        document = await request.app.state.writer.vault(
            data,
            user_id,
            file_name,
            MANUAL_UPLOAD_SOURCE,
            mime_type=content_type,
            actor=actor,
        )
    except StorageWriteError as e:
        logger.error(f"Upload of {file_name} for user {user_id} failed: {e}")
        return JSONResponse(
            error_response_body("storage_error", "Document could not be stored"),
            status_code=500,
        )

    tx_id = await request.app.state.anchoring.anchor(document, actor=actor)
    if tx_id is not None:
        document = document.model_copy(update={"blockchain_txid": tx_id})
    logger.info(f"Uploaded document {document.id} for user {user_id}")
    return JSONResponse(
        {
            "document": document.model_dump(mode="json"),
            "anchored": tx_id is not None,
            "tx_id": tx_id,
        },
        status_code=201,
    )


async def get_document(request: Request) -> JSONResponse:
    """GET /api/v1/documents/{document_id}"""
    document_id = request.path_params["document_id"]
    document = await request.app.state.storage.get_document(document_id)
    if document is None:
        return _not_found(document_id)

    await request.app.state.audit.append(
        document.id, AuditEventType.VIEWED, request_actor(request)
    )
    return JSONResponse(document.model_dump(mode="json"))


async def get_document_content(request: Request) -> Response:
    """GET /api/v1/documents/{document_id}/content - the stored bytes."""
    document_id = request.path_params["document_id"]
    document = await request.app.state.storage.get_document(document_id)
    if document is None:
        return _not_found(document_id)

    try:
        data = await request.app.state.writer.read(document)
    except BlobStoreError as e:
        logger.error(f"Content for document {document_id} unreadable: {e}")
        return JSONResponse(
            error_response_body("content_unavailable", "Stored content unreadable"),
            status_code=500,
        )

    await request.app.state.audit.append(
        document.id,
        AuditEventType.DOWNLOADED,
        request_actor(request),
        {"size": len(data)},
    )
    return Response(
        data,
        media_type=document.mime_type,
        headers={
            "Content-Disposition": f'attachment; filename="{document.file_name}"'
        },
    )


async def get_document_history(request: Request) -> JSONResponse:
    """GET /api/v1/documents/{document_id}/history - audit entries, newest first."""
    document_id = request.path_params["document_id"]
    if await request.app.state.storage.get_document(document_id) is None:
        return _not_found(document_id)

    entries = await request.app.state.audit.history(document_id)
    return JSONResponse(
        {
            "document_id": document_id,
            "entries": [entry.model_dump(mode="json") for entry in entries],
        }
    )


async def anchor_document(request: Request) -> JSONResponse:
    """POST /api/v1/documents/{document_id}/anchor - re-anchor on demand."""
    document_id = request.path_params["document_id"]
    document = await request.app.state.storage.get_document(document_id)
    if document is None:
        return _not_found(document_id)

    tx_id = await request.app.state.anchoring.anchor(
        document, force=True, actor=request_actor(request)
    )
    return JSONResponse(
        {"document_id": document_id, "anchored": tx_id is not None, "tx_id": tx_id}
    )


async def verify(request: Request) -> JSONResponse:
    """POST /api/v1/verify[?document_id=] - check presented bytes."""
    data = await request.body()
    if not data:
        return JSONResponse(
            error_response_body("invalid_request", "Request body is empty"),
            status_code=400,
        )

    result = await verify_document(
        request.app.state.audit,
        data,
        document_id=request.query_params.get("document_id"),
        actor=request_actor(request),
    )
    return JSONResponse(result.to_dict())
