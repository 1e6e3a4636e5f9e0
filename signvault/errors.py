"""Error taxonomy shared by the webhook pipeline, provider adapters and anchoring.

Every error raised below the HTTP boundary derives from ``SignVaultError`` so
the pipeline can record ``"<ClassName>: <message>"`` as an event's processing
error without caring where it came from.
"""


class SignVaultError(Exception):
    """Base class for all domain errors."""


class ParseError(SignVaultError):
    """Webhook payload is malformed or has an unrecognized shape."""


class AuthError(SignVaultError):
    """Provider rejected our credentials, or no usable credentials exist."""


class RefreshError(AuthError):
    """Provider rejected the refresh token; the connection must be re-authorized."""


class ConnectionNotFoundError(AuthError):
    """No OAuth connection matches the provider account named by an event."""


class TransientProviderError(SignVaultError):
    """Timeout, 5xx or rate limit from a provider. Safe to retry the call."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderRequestError(SignVaultError):
    """Provider refused the request with a non-retryable 4xx."""


class ProviderNotFoundError(ProviderRequestError):
    """Provider reports that the requested document does not exist."""


class StorageWriteError(SignVaultError):
    """Document bytes or records could not be written to durable storage."""


class OAuthStateError(SignVaultError):
    """OAuth ``state`` is unknown, expired or already consumed."""


class AnchoringError(SignVaultError):
    """Ledger submission failed. Never fatal to vaulting."""


class InsufficientFundsError(AnchoringError):
    """Signing account cannot cover the estimated transaction fee."""


class LedgerUnavailableError(AnchoringError):
    """No RPC endpoint answered, or no signing key is configured."""


def describe_error(error: BaseException) -> str:
    """Render an error the way it is stored on an event record."""
    return f"{type(error).__name__}: {error}"
