"""Builds provider adapters for connected integrations."""

from __future__ import annotations

import threading

import httpx

from mw_core.config import RemediationConfig
from mw_core.mailbox.base import MailboxProvider, TokenProvider
from mw_core.mailbox.gmail import GmailProvider
from mw_core.mailbox.models import IntegrationType
from mw_core.mailbox.o365 import O365Provider

_ADAPTERS: dict[IntegrationType, type[MailboxProvider]] = {
    IntegrationType.GMAIL: GmailProvider,
    IntegrationType.O365: O365Provider,
}


class MailboxProviderFactory:
    """One adapter per integration, reused so label/folder IDs stay cached."""

    def __init__(
        self,
        tokens: TokenProvider,
        *,
        config: RemediationConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.tokens = tokens
        self.config = config or RemediationConfig()
        self.client = client
        self._providers: dict[str, MailboxProvider] = {}
        self._lock = threading.Lock()

    def __call__(
        self, tenant_id: str, integration_id: str, integration_type: IntegrationType
    ) -> MailboxProvider:
        with self._lock:
            provider = self._providers.get(integration_id)
            if provider is None:
                provider_name = integration_type.value

                async def access_token() -> str:
                    return await self.tokens.get_access_token(tenant_id, provider_name)

                adapter = _ADAPTERS[integration_type]
                provider = adapter(access_token, client=self.client, config=self.config)
                self._providers[integration_id] = provider
            return provider

    def evict(self, integration_id: str) -> None:
        with self._lock:
            self._providers.pop(integration_id, None)
