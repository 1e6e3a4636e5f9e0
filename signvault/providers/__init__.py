"""E-signature provider adapters."""

from .base import (
    AccountInfo,
    DocumentMetadata,
    NormalizedEvent,
    ProviderAdapter,
    TokenGrant,
)
from .docusign import DocuSignAdapter
from .pandadoc import PandaDocAdapter
from .registry import ProviderRegistry
from .signnow import SignNowAdapter

__all__ = [
    "AccountInfo",
    "DocumentMetadata",
    "DocuSignAdapter",
    "NormalizedEvent",
    "PandaDocAdapter",
    "ProviderAdapter",
    "ProviderRegistry",
    "SignNowAdapter",
    "TokenGrant",
]
