"""Error taxonomy shared by the provider adapters and the state machine."""


class ProviderError(Exception):
    """Base exception for provider adapter operations."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class TransientProviderError(ProviderError):
    """Network failure, timeout or 5xx. Retried with backoff."""

    pass


class NonRetryableProviderError(ProviderError):
    """Conflict, invalid input or ownership problem. Fails immediately."""

    pass


class RegistrationError(NonRetryableProviderError):
    """Domain registration failed. Never retried automatically."""

    pass


class DnsError(TransientProviderError):
    """Host records could not be written at the registrar."""

    pass


class IdempotencyConflict(Exception):
    """Optimistic version mismatch on a row update; retried on the next tick."""

    pass


class ExhaustedRetries(Exception):
    """Attempt cap reached for an activation."""

    def __init__(self, hostname: str, reason: str):
        super().__init__(f"{hostname}: {reason}")
        self.hostname = hostname
        self.reason = reason


class WebhookVerificationError(Exception):
    """Payment webhook payload failed signature or shape checks."""

    pass


class InvalidHostnameError(ValueError):
    """Hostname is not a valid fully-qualified DNS name."""

    pass


class HostnameInUseError(Exception):
    """Hostname already has an open activation owned by another site."""

    pass


class CustomDomainNotAllowed(Exception):
    """The site's billing state does not permit custom domains."""

    pass


class UnknownSubscriptionError(Exception):
    """Payment event names no site and matches no stored subscription."""

    pass
