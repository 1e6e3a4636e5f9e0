"""Starlette application: webhook intake, OAuth connection flow, document API
and the background worker pool that processes recorded events.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import anyio
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Route

from signvault.anchoring.ledger import LedgerClient, Web3Ledger
from signvault.anchoring.service import AnchoringService
from signvault.api.documents import (
    anchor_document,
    get_document,
    get_document_content,
    get_document_history,
    list_documents,
    upload_document,
    verify,
)
from signvault.api.health import health_live, health_ready
from signvault.api.oauth_routes import oauth_authorize, oauth_callback
from signvault.api.webhooks import receive_webhook
from signvault.auth.oauth_flow import OAuthFlow
from signvault.auth.token_manager import TokenManager
from signvault.config import Settings, get_settings
from signvault.observability import (
    ObservabilityMiddleware,
    setup_metrics,
    setup_tracing,
)
from signvault.pipeline.processor import WebhookProcessor
from signvault.pipeline.recorder import EventRecorder
from signvault.pipeline.worker import processor_task
from signvault.providers.registry import ProviderRegistry
from signvault.storage import VaultStorage
from signvault.vault.audit import AuditLedger
from signvault.vault.blob_store import BlobStore, LocalBlobStore
from signvault.vault.writer import VaultWriter

logger = logging.getLogger(__name__)


def build_ledger(settings: Settings) -> Optional[LedgerClient]:
    if not settings.blockchain_enabled:
        logger.info("Blockchain anchoring disabled (BLOCKCHAIN_ENABLED=false)")
        return None
    if not settings.polygon_private_key:
        return None
    return Web3Ledger(
        settings.polygon_rpc_urls,
        settings.polygon_private_key,
        request_timeout=settings.provider_http_timeout,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    storage: Optional[VaultStorage] = None,
    providers: Optional[ProviderRegistry] = None,
    blob_store: Optional[BlobStore] = None,
    ledger: Optional[LedgerClient] = None,
) -> Starlette:
    """
    Wire the pipeline components and routes.

    Collaborators may be injected; anything omitted is built from ``settings``.
    """
    settings = settings or get_settings()
    storage = storage or VaultStorage.from_settings(settings)
    providers = providers or ProviderRegistry.from_settings(settings)
    blob_store = blob_store or LocalBlobStore(settings.storage_root)
    if ledger is None:
        ledger = build_ledger(settings)

    audit = AuditLedger(storage)
    writer = VaultWriter(storage, blob_store, audit, settings.retention_period)
    anchoring = AnchoringService(
        storage,
        audit,
        ledger,
        confirmation_timeout=settings.anchor_confirmation_timeout,
    )
    recorder = EventRecorder(storage, claim_lease=settings.webhook_claim_lease)
    token_manager = TokenManager(storage, providers)
    processor = WebhookProcessor(
        storage, providers, recorder, token_manager, writer, anchoring
    )
    oauth_flow = OAuthFlow(storage, state_ttl=settings.oauth_state_ttl)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await storage.initialize()
        expired = await storage.cleanup_expired_states()
        if expired:
            logger.info(f"Removed {expired} expired OAuth state(s)")

        unfinished = await storage.list_unfinished_webhook_events()
        if unfinished:
            logger.warning(
                f"{len(unfinished)} webhook event(s) left unfinished by a previous run"
            )

        send_stream, receive_stream = anyio.create_memory_object_stream(
            max_buffer_size=settings.webhook_queue_size
        )
        shutdown_event = anyio.Event()

        async with anyio.create_task_group() as tg:
            for i in range(settings.webhook_workers):
                await tg.start(
                    processor_task,
                    i,
                    receive_stream.clone(),
                    shutdown_event,
                    processor,
                )
            app.state.webhook_send_stream = send_stream
            logger.info(f"Started {settings.webhook_workers} webhook worker(s)")

            try:
                yield
            finally:
                logger.info("Shutting down webhook workers")
                app.state.webhook_send_stream = None
                shutdown_event.set()
                send_stream.close()

        receive_stream.close()
        await providers.close()
        await anchoring.close()

    routes = [
        Route("/health/live", health_live, methods=["GET"]),
        Route("/health/ready", health_ready, methods=["GET"]),
        Route("/webhooks/{provider}", receive_webhook, methods=["POST"]),
        Route("/oauth/{provider}/authorize", oauth_authorize, methods=["GET"]),
        Route("/oauth/{provider}/callback", oauth_callback, methods=["GET"]),
        Route("/api/v1/documents", list_documents, methods=["GET"]),
        Route("/api/v1/documents", upload_document, methods=["POST"]),
        Route("/api/v1/documents/{document_id}", get_document, methods=["GET"]),
        Route(
            "/api/v1/documents/{document_id}/content",
            get_document_content,
            methods=["GET"],
        ),
        Route(
            "/api/v1/documents/{document_id}/history",
            get_document_history,
            methods=["GET"],
        ),
        Route(
            "/api/v1/documents/{document_id}/anchor",
            anchor_document,
            methods=["POST"],
        ),
        Route("/api/v1/verify", verify, methods=["POST"]),
    ]

    app = Starlette(
        routes=routes,
        middleware=[Middleware(ObservabilityMiddleware)],
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.storage = storage
    app.state.providers = providers
    app.state.audit = audit
    app.state.writer = writer
    app.state.anchoring = anchoring
    app.state.recorder = recorder
    app.state.processor = processor
    app.state.token_manager = token_manager
    app.state.oauth_flow = oauth_flow
    app.state.webhook_send_stream = None

    return app


def get_app() -> Starlette:
    """Application factory used by ``signvault run``: sets up metrics and tracing."""
    settings = get_settings()

    if settings.metrics_enabled:
        setup_metrics(port=settings.metrics_port)

    if settings.otel_exporter_otlp_endpoint:
        setup_tracing(
            service_name=settings.otel_service_name,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
            otlp_verify_ssl=settings.otel_exporter_verify_ssl,
            sampling_rate=settings.otel_traces_sampler_arg,
        )
        logger.info(
            f"OpenTelemetry tracing enabled (endpoint: {settings.otel_exporter_otlp_endpoint})"
        )
    else:
        logger.info(
            "OpenTelemetry tracing disabled (set OTEL_EXPORTER_OTLP_ENDPOINT to enable)"
        )

    return create_app(settings)
