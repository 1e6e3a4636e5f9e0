import logging
import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_POLYGON_RPC_URLS = [
    "https://polygon-rpc.com",
    "https://polygon-bor.publicnode.com",
    "https://polygon.blockpi.network/v1/rpc/public",
]


def _split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Application settings from environment variables."""

    # Persistence
    # TOKEN_ENCRYPTION_KEY: Optional Fernet key. When unset, provider tokens are
    #                       stored unencrypted and a warning is logged at startup.
    database_path: str = "/app/data/signvault.db"
    token_encryption_key: Optional[str] = None
    storage_root: str = "/app/data/vault"
    retention_period: str = "7 years"
    public_url: str = "http://localhost:8000"

    # DocuSign
    docusign_client_id: Optional[str] = None
    docusign_client_secret: Optional[str] = None
    docusign_auth_server: str = "account-d.docusign.com"
    docusign_redirect_uri: Optional[str] = None

    # PandaDoc
    pandadoc_client_id: Optional[str] = None
    pandadoc_client_secret: Optional[str] = None
    pandadoc_redirect_uri: Optional[str] = None
    pandadoc_webhook_key: Optional[str] = None
    pandadoc_api_base: str = "https://api.pandadoc.com"

    # SignNow
    signnow_client_id: Optional[str] = None
    signnow_client_secret: Optional[str] = None
    signnow_redirect_uri: Optional[str] = None
    signnow_api_base: str = "https://api.signnow.com"

    # Provider HTTP behaviour
    provider_http_timeout: float = 30.0
    provider_max_retries: int = 3
    oauth_state_ttl: int = 600  # seconds

    # Webhook pipeline
    webhook_workers: int = 3
    webhook_queue_size: int = 1000
    webhook_claim_lease: int = 900  # seconds before a processing claim is stale

    # Blockchain anchoring
    blockchain_enabled: bool = True
    polygon_rpc_urls: list[str] = field(
        default_factory=lambda: list(DEFAULT_POLYGON_RPC_URLS)
    )
    polygon_private_key: Optional[str] = None
    anchor_confirmation_timeout: int = 120

    # Observability settings
    metrics_enabled: bool = True
    metrics_port: int = 9090
    otel_exporter_otlp_endpoint: Optional[str] = None
    otel_exporter_verify_ssl: bool = False
    otel_service_name: str = "signvault"
    otel_traces_sampler_arg: float = 1.0
    log_format: str = "text"  # "json" or "text"
    log_level: str = "INFO"
    log_include_trace_context: bool = True

    def __post_init__(self):
        """Validate pipeline sizing and provider credentials."""
        logger = logging.getLogger(__name__)

        if self.webhook_workers < 1:
            raise ValueError(
                f"WEBHOOK_WORKERS ({self.webhook_workers}) must be at least 1."
            )
        if self.webhook_queue_size < 1:
            raise ValueError(
                f"WEBHOOK_QUEUE_SIZE ({self.webhook_queue_size}) must be at least 1."
            )
        if self.provider_http_timeout <= 0:
            raise ValueError(
                f"PROVIDER_HTTP_TIMEOUT ({self.provider_http_timeout}) must be positive."
            )
        if self.provider_max_retries < 1:
            raise ValueError(
                f"PROVIDER_MAX_RETRIES ({self.provider_max_retries}) must be at least 1."
            )

        for provider in ("docusign", "pandadoc", "signnow"):
            client_id = getattr(self, f"{provider}_client_id")
            client_secret = getattr(self, f"{provider}_client_secret")
            if bool(client_id) != bool(client_secret):
                raise ValueError(
                    f"{provider.upper()}_CLIENT_ID and {provider.upper()}_CLIENT_SECRET "
                    "must be set together."
                )

        if self.blockchain_enabled and not self.polygon_private_key:
            logger.warning(
                "BLOCKCHAIN_ENABLED is true but POLYGON_PRIVATE_KEY is not set. "
                "Documents will be vaulted without blockchain anchoring."
            )

        if not self.token_encryption_key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY is not set - provider tokens will be stored unencrypted"
            )

    def redirect_uri(self, provider: str) -> str:
        """OAuth redirect URI for a provider, defaulting to the public callback route."""
        configured = getattr(self, f"{provider}_redirect_uri", None)
        if configured:
            return configured
        return f"{self.public_url.rstrip('/')}/oauth/{provider}/callback"

    def is_provider_configured(self, provider: str) -> bool:
        return bool(getattr(self, f"{provider}_client_id", None))


def get_settings() -> Settings:
    """Get application settings from environment variables.

    Returns:
        Settings object with configuration values
    """
    return Settings(
        # Persistence
        database_path=os.getenv("VAULT_DATABASE_PATH", "/app/data/signvault.db"),
        token_encryption_key=os.getenv("TOKEN_ENCRYPTION_KEY"),
        storage_root=os.getenv("VAULT_STORAGE_ROOT", "/app/data/vault"),
        retention_period=os.getenv("VAULT_RETENTION_PERIOD", "7 years"),
        public_url=os.getenv("SIGNVAULT_PUBLIC_URL", "http://localhost:8000"),
        # DocuSign
        docusign_client_id=os.getenv("DOCUSIGN_CLIENT_ID"),
        docusign_client_secret=os.getenv("DOCUSIGN_CLIENT_SECRET"),
        docusign_auth_server=os.getenv(
            "DOCUSIGN_AUTH_SERVER", "account-d.docusign.com"
        ),
        docusign_redirect_uri=os.getenv("DOCUSIGN_REDIRECT_URI"),
        # PandaDoc
        pandadoc_client_id=os.getenv("PANDADOC_CLIENT_ID"),
        pandadoc_client_secret=os.getenv("PANDADOC_CLIENT_SECRET"),
        pandadoc_redirect_uri=os.getenv("PANDADOC_REDIRECT_URI"),
        pandadoc_webhook_key=os.getenv("PANDADOC_WEBHOOK_KEY"),
        pandadoc_api_base=os.getenv("PANDADOC_API_BASE", "https://api.pandadoc.com"),
        # SignNow
        signnow_client_id=os.getenv("SIGNNOW_CLIENT_ID"),
        signnow_client_secret=os.getenv("SIGNNOW_CLIENT_SECRET"),
        signnow_redirect_uri=os.getenv("SIGNNOW_REDIRECT_URI"),
        signnow_api_base=os.getenv("SIGNNOW_API_BASE", "https://api.signnow.com"),
        # Provider HTTP behaviour
        provider_http_timeout=float(os.getenv("PROVIDER_HTTP_TIMEOUT", "30")),
        provider_max_retries=int(os.getenv("PROVIDER_MAX_RETRIES", "3")),
        oauth_state_ttl=int(os.getenv("OAUTH_STATE_TTL", "600")),
        # Webhook pipeline
        webhook_workers=int(os.getenv("WEBHOOK_WORKERS", "3")),
        webhook_queue_size=int(os.getenv("WEBHOOK_QUEUE_SIZE", "1000")),
        webhook_claim_lease=int(os.getenv("WEBHOOK_CLAIM_LEASE", "900")),
        # Blockchain anchoring
        blockchain_enabled=os.getenv("BLOCKCHAIN_ENABLED", "true").lower() == "true",
        polygon_rpc_urls=_split_csv(os.getenv("POLYGON_RPC_URLS"))
        or list(DEFAULT_POLYGON_RPC_URLS),
        polygon_private_key=os.getenv("POLYGON_PRIVATE_KEY"),
        anchor_confirmation_timeout=int(
            os.getenv("ANCHOR_CONFIRMATION_TIMEOUT", "120")
        ),
        # Observability settings
        metrics_enabled=os.getenv("METRICS_ENABLED", "true").lower() == "true",
        metrics_port=int(os.getenv("METRICS_PORT", "9090")),
        otel_exporter_otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
        otel_exporter_verify_ssl=os.getenv("OTEL_EXPORTER_VERIFY_SSL", "false").lower()
        == "true",
        otel_service_name=os.getenv("OTEL_SERVICE_NAME", "signvault"),
        otel_traces_sampler_arg=float(os.getenv("OTEL_TRACES_SAMPLER_ARG", "1.0")),
        log_format=os.getenv("LOG_FORMAT", "text"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_include_trace_context=os.getenv("LOG_INCLUDE_TRACE_CONTEXT", "true").lower()
        == "true",
    )
