"""Provider registry: builds one adapter per supported provider from settings."""

import logging
from typing import Optional

import httpx

from signvault.config import Settings
from signvault.providers.base import ProviderAdapter
from signvault.providers.docusign import DocuSignAdapter
from signvault.providers.pandadoc import PandaDocAdapter
from signvault.providers.signnow import SignNowAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Lookup table of provider adapters keyed by provider name.

    Every supported provider is registered so webhooks are always recorded,
    even when OAuth credentials for that provider are not configured yet.
    """

    def __init__(self, adapters: dict[str, ProviderAdapter]):
        self._adapters = dict(adapters)

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "ProviderRegistry":
        common = {
            "http_client": http_client,
            "timeout": settings.provider_http_timeout,
            "max_retries": settings.provider_max_retries,
        }
        adapters: list[ProviderAdapter] = [
            DocuSignAdapter(
                settings.docusign_client_id,
                settings.docusign_client_secret,
                settings.redirect_uri("docusign"),
                auth_server=settings.docusign_auth_server,
                **common,
            ),
            PandaDocAdapter(
                settings.pandadoc_client_id,
                settings.pandadoc_client_secret,
                settings.redirect_uri("pandadoc"),
                api_base=settings.pandadoc_api_base,
                webhook_key=settings.pandadoc_webhook_key,
                **common,
            ),
            SignNowAdapter(
                settings.signnow_client_id,
                settings.signnow_client_secret,
                settings.redirect_uri("signnow"),
                api_base=settings.signnow_api_base,
                **common,
            ),
        ]

        for adapter in adapters:
            if not settings.is_provider_configured(adapter.name):
                logger.info(
                    f"{adapter.name}: OAuth client not configured; "
                    "webhooks are accepted but new connections cannot be made"
                )

        return cls({adapter.name: adapter for adapter in adapters})

    def get(self, name: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(name.lower())

    def names(self) -> list[str]:
        return sorted(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
