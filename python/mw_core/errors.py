"""Exception taxonomy shared by the threat-intel and remediation layers."""

from __future__ import annotations


class MailwardError(Exception):
    """Base class for all mailward errors."""


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(MailwardError):
    """An error returned by a mailbox provider API.

    Attributes:
        provider: Provider name ("gmail" or "o365").
        status_code: HTTP status code, if the error came from a response.
        retry_after: Seconds the provider asked us to wait, if any.
        reason: Provider-specific reason or error code.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after
        self.reason = reason


class RateLimitError(ProviderError):
    """Provider throttled the request (429 or quota exceeded)."""


class TransientProviderError(ProviderError):
    """Temporary provider failure (5xx or network)."""


class AuthenticationError(ProviderError):
    """Token rejected or permission denied. Never retried."""


# =============================================================================
# Remediation Errors
# =============================================================================


class DataIntegrityError(MailwardError):
    """Stored message ID does not match the integration's ID format."""

    def __init__(self, message: str, *, detected_format: str, integration_type: str) -> None:
        super().__init__(message)
        self.detected_format = detected_format
        self.integration_type = integration_type


class UnresolvableMessageError(MailwardError):
    """The provider-native message could not be located by any strategy."""


class RemediationTimeoutError(MailwardError):
    """The mailbox did not finish the action within the caller's deadline."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Remediation timed out after {timeout:.1f}s")
        self.timeout = timeout


class InvalidTransitionError(MailwardError):
    """A threat record cannot move from its current status to the requested one."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition threat from '{current}' to '{target}'")
        self.current = current
        self.target = target


# =============================================================================
# Intel Errors
# =============================================================================


class FeedFetchError(MailwardError):
    """A reputation feed could not be downloaded or parsed."""

    def __init__(self, feed: str, message: str) -> None:
        super().__init__(f"{feed}: {message}")
        self.feed = feed


class WhoisLookupError(MailwardError):
    """A configured WHOIS lookup failed."""
