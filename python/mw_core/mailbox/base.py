"""Base class for mailbox provider adapters.

An adapter performs the handful of mailbox operations remediation needs
(list, fetch, move/label, Message-ID search) against one provider API. Every
HTTP call goes through :meth:`MailboxProvider._request`, which attaches a
fresh bearer token, maps error responses into the :mod:`mw_core.errors`
taxonomy using the adapter's classifier and retries transient failures with
the shared :class:`~mw_core.resilience.retry.RetryPolicy`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from mw_core.config import RemediationConfig
from mw_core.errors import ProviderError, TransientProviderError
from mw_core.intel.models import utcnow
from mw_core.mailbox.models import IntegrationType, MailboxTarget, ParsedEmail
from mw_core.resilience.retry import RetryPolicy, is_retryable_error

AccessTokenFn = Callable[[], Awaitable[str]]


class TokenProvider(Protocol):
    """OAuth token source owned by the host application."""

    async def get_access_token(self, tenant_id: str, provider: str) -> str: ...


@dataclass
class MessageRef:
    id: str
    thread_id: str | None = None


@dataclass
class MessagePage:
    """One page of a message listing."""

    messages: list[MessageRef] = field(default_factory=list)
    next_page_token: str | None = None


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - utcnow()).total_seconds())


def error_payload(response: httpx.Response) -> dict[str, Any]:
    """The ``error`` object of a JSON error body, or an empty dict."""
    try:
        data = response.json()
    except ValueError:
        return {}
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return data["error"]
    return {}


class MailboxProvider(ABC):
    """Abstract mailbox adapter.

    Subclasses define the provider name, base URL, the error classifier and
    the mailbox operations.
    """

    provider: IntegrationType
    base_url: str

    def __init__(
        self,
        access_token: AccessTokenFn,
        *,
        client: httpx.AsyncClient | None = None,
        config: RemediationConfig | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            access_token: Returns a valid bearer token; called once per attempt.
            client: HTTP client. A private one is created when omitted.
            config: Quarantine naming, timeouts and retry settings.
            retry: Retry policy. Built from ``config.retry`` with this
                adapter's classifier when omitted.
        """
        self.config = config or RemediationConfig()
        self._access_token = access_token
        self.client = client or httpx.AsyncClient(timeout=self.config.request_timeout_seconds)
        self.retry = retry or RetryPolicy.from_config(
            self.config.retry, is_retryable=self.is_retryable
        )

    # -------------------------------------------------------------------------
    # Mailbox operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_messages(
        self,
        *,
        query: str | None = None,
        max_results: int = 50,
        page_token: str | None = None,
    ) -> MessagePage:
        """List message references, newest first."""

    @abstractmethod
    async def get_message(self, message_id: str) -> ParsedEmail:
        """Fetch one message and map it into a :class:`ParsedEmail`."""

    @abstractmethod
    async def move_or_label(self, message_id: str, target: MailboxTarget) -> str:
        """Move a message to quarantine, back to the inbox or to trash.

        The operation is set-based: repeating it leaves the mailbox unchanged.

        Args:
            message_id: Provider-native message ID.
            target: Destination.

        Returns:
            The provider message ID after the operation. Graph assigns a new
            ID when a message changes folder; Gmail IDs never change.
        """

    @abstractmethod
    async def search_by_rfc822_message_id(self, internet_message_id: str) -> str | None:
        """Find the provider-native ID for an RFC-5322 Message-ID header value."""

    @abstractmethod
    async def ensure_quarantine_target(self) -> str:
        """Return the quarantine label/folder ID, creating it if missing."""

    # -------------------------------------------------------------------------
    # Error classification
    # -------------------------------------------------------------------------

    @abstractmethod
    def error_from_response(self, response: httpx.Response, operation: str) -> ProviderError:
        """Map a non-2xx response to the matching :class:`ProviderError` subclass."""

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable_error(error)

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        async def attempt() -> httpx.Response:
            token = await self._access_token()
            try:
                response = await self.client.request(
                    method,
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    **kwargs,
                )
            except httpx.TransportError as e:
                raise TransientProviderError(
                    f"{operation} failed: {e}", provider=self.provider.value
                ) from e
            if response.is_success:
                return response
            raise self.error_from_response(response, operation)

        return await self.retry.execute(attempt, operation=f"{self.provider.value}.{operation}")

    async def _json(
        self, method: str, path: str, *, operation: str, **kwargs: Any
    ) -> dict[str, Any]:
        response = await self._request(method, path, operation=operation, **kwargs)
        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def aclose(self) -> None:
        await self.client.aclose()


__all__ = [
    "AccessTokenFn",
    "MailboxProvider",
    "MessagePage",
    "MessageRef",
    "TokenProvider",
    "error_payload",
    "parse_retry_after",
]
