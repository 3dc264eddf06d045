"""
Error taxonomy for the integration pipeline.

Every error carries the provider and connection it concerns so that a caller
(manual trigger, webhook dispatcher, sweep) has enough context to resume.
"""

from typing import Any, Optional


class IntegrationError(Exception):
    """Base class for all integration pipeline errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        connection_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.connection_id = connection_id
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.provider:
            payload["provider"] = self.provider
        if self.connection_id:
            payload["connection_id"] = self.connection_id
        if self.details:
            payload["details"] = self.details
        return payload


class AuthError(IntegrationError):
    """Invalid or expired credential. Triggers a refresh or moves the connection to error."""


class ConnectionExpiredError(AuthError):
    """The credential could not be refreshed; the connection is now in the error state."""


class SignatureVerificationError(AuthError):
    """An inbound webhook failed its signature or shared-token check."""


class RateLimitError(IntegrationError):
    """The provider asked us to slow down. Always retried with backoff."""

    retryable = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class UpstreamUnavailableError(IntegrationError):
    """Provider outage or network failure that outlived the retry budget."""

    retryable = True


class ProviderRequestError(IntegrationError):
    """A non-retryable client error returned by the provider (4xx other than 401/429)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ValidationError(IntegrationError):
    """Malformed webhook payload or request. Logged, marked failed, never retried."""


class DuplicateConnectionError(IntegrationError):
    """An active connection already exists for this owner and provider."""


class ConnectionNotFoundError(IntegrationError):
    """No connection matches the requested owner/provider or id."""


class SyncInProgressError(IntegrationError):
    """Another sync already holds the lease for this connection."""


class DuplicateDeliveryError(IntegrationError):
    """A webhook with the same (provider, delivery id) was already logged."""

    def __init__(self, message: str, *, delivery_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.delivery_id = delivery_id


class InferenceItemError(IntegrationError):
    """Inference failed for a single activity. Skipped and reported in the sync summary."""

    def __init__(self, message: str, *, activity_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.activity_id = activity_id

