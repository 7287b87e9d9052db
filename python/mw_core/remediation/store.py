"""Threat records and integration state.

The threat store is the only persistence remediation needs. Status changes go
through :meth:`ThreatStore.compare_and_set`, so two workers can never both
move a record out of the same state.
"""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Collection
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from mw_core.intel.models import utcnow
from mw_core.mailbox.models import IntegrationType

logger = structlog.get_logger()

# Column limits of the threats table
MAX_TEXT_LENGTH = 250
MAX_MESSAGE_ID_LENGTH = 490
MAX_EXTERNAL_ID_LENGTH = 500
MAX_ERROR_LENGTH = 500


def truncate(value: str | None, max_length: int) -> str | None:
    """Clip ``value`` to ``max_length`` characters, ending in "..." when cut."""
    if not value:
        return None
    if len(value) <= max_length:
        return value
    return value[: max_length - 3] + "..."


class ThreatStatus(str, Enum):
    REMEDIATION_PENDING = "remediation_pending"
    QUARANTINED = "quarantined"
    RELEASED = "released"
    DELETED = "deleted"
    REMEDIATION_FAILED = "remediation_failed"


@dataclass
class ThreatRecord:
    """A flagged message and its remediation state.

    Attributes:
        tenant_id: Owning tenant.
        message_id: RFC-5322 Message-ID (or provider ID when the header is absent).
        integration_id: Connected mailbox the message lives in.
        integration_type: "gmail" or "o365".
        status: Current remediation status.
        verdict: Action verdict that created the record ("quarantine" or "block").
        score: Risk score 0..1.
        external_message_id: Provider-native ID used for mailbox operations.
        subject: Subject line, truncated to the column limit.
        sender_email: From: address, truncated.
        recipient_email: First To: address, truncated.
        signals: Detection signals that led to the verdict.
        error_message: Last remediation failure, truncated.
        remediated_at: When the last successful mailbox change happened.
        remediated_by: Actor of the last successful change ("system" for auto).
    """

    tenant_id: str
    message_id: str
    integration_id: str
    integration_type: IntegrationType
    status: ThreatStatus
    verdict: str
    score: float
    external_message_id: str | None = None
    subject: str | None = None
    sender_email: str | None = None
    recipient_email: str | None = None
    signals: list[Any] = field(default_factory=list)
    error_message: str | None = None
    remediated_at: datetime | None = None
    remediated_by: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "message_id": self.message_id,
            "external_message_id": self.external_message_id,
            "integration_id": self.integration_id,
            "integration_type": self.integration_type.value,
            "status": self.status.value,
            "verdict": self.verdict,
            "score": self.score,
            "subject": self.subject,
            "sender_email": self.sender_email,
            "recipient_email": self.recipient_email,
            "signals": list(self.signals),
            "error_message": self.error_message,
            "remediated_at": self.remediated_at.isoformat() if self.remediated_at else None,
            "remediated_by": self.remediated_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Threat Store
# =============================================================================


class ThreatStore(ABC):
    """Persistence for threat records, keyed by tenant."""

    @abstractmethod
    def get(self, tenant_id: str, threat_id: str) -> ThreatRecord | None:
        """Return a copy of the record, or None."""

    @abstractmethod
    def get_by_message_id(self, tenant_id: str, message_id: str) -> ThreatRecord | None:
        """Return a copy of the record for a message, or None."""

    @abstractmethod
    def create_if_absent(self, record: ThreatRecord) -> tuple[ThreatRecord, bool]:
        """Insert ``record`` unless the tenant already has one for its message.

        Returns:
            (stored record, True if it was created).
        """

    @abstractmethod
    def compare_and_set(
        self,
        tenant_id: str,
        threat_id: str,
        expected: Collection[ThreatStatus],
        new_status: ThreatStatus,
        **changes: Any,
    ) -> ThreatRecord | None:
        """Atomically move a record to ``new_status`` if its status is in ``expected``.

        ``changes`` are applied in the same step. Returns the updated record,
        or None if the record is missing or its status did not match.
        """

    @abstractmethod
    def update(self, tenant_id: str, threat_id: str, **changes: Any) -> ThreatRecord | None:
        """Apply field changes without a status check."""


class InMemoryThreatStore(ThreatStore):
    """Thread-safe in-process store. Returns copies so callers cannot mutate state."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], ThreatRecord] = {}
        self._by_message: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, tenant_id: str, threat_id: str) -> ThreatRecord | None:
        with self._lock:
            record = self._records.get((tenant_id, threat_id))
            return replace(record) if record else None

    def get_by_message_id(self, tenant_id: str, message_id: str) -> ThreatRecord | None:
        with self._lock:
            threat_id = self._by_message.get((tenant_id, message_id))
            if threat_id is None:
                return None
            return replace(self._records[(tenant_id, threat_id)])

    def create_if_absent(self, record: ThreatRecord) -> tuple[ThreatRecord, bool]:
        with self._lock:
            existing_id = self._by_message.get((record.tenant_id, record.message_id))
            if existing_id is not None:
                return replace(self._records[(record.tenant_id, existing_id)]), False
            stored = replace(record)
            self._records[(record.tenant_id, record.id)] = stored
            self._by_message[(record.tenant_id, record.message_id)] = record.id
            return replace(stored), True

    def compare_and_set(
        self,
        tenant_id: str,
        threat_id: str,
        expected: Collection[ThreatStatus],
        new_status: ThreatStatus,
        **changes: Any,
    ) -> ThreatRecord | None:
        with self._lock:
            record = self._records.get((tenant_id, threat_id))
            if record is None or record.status not in expected:
                return None
            updated = replace(record, **changes, status=new_status, updated_at=utcnow())
            self._records[(tenant_id, threat_id)] = updated
            return replace(updated)

    def update(self, tenant_id: str, threat_id: str, **changes: Any) -> ThreatRecord | None:
        with self._lock:
            record = self._records.get((tenant_id, threat_id))
            if record is None:
                return None
            updated = replace(record, **changes, updated_at=utcnow())
            self._records[(tenant_id, threat_id)] = updated
            return replace(updated)

    def list_for_tenant(
        self, tenant_id: str, status: ThreatStatus | None = None
    ) -> list[ThreatRecord]:
        with self._lock:
            return [
                replace(r)
                for (tenant, _), r in self._records.items()
                if tenant == tenant_id and (status is None or r.status == status)
            ]


# =============================================================================
# Integrations
# =============================================================================


@dataclass
class Integration:
    """A connected mailbox."""

    id: str
    tenant_id: str
    type: IntegrationType
    connection_id: str | None = None
    requires_reauth: bool = False
    reauth_reason: str | None = None


class IntegrationRegistry:
    """Connected integrations and their re-authentication flag."""

    def __init__(self, integrations: Collection[Integration] = ()) -> None:
        self._integrations: dict[str, Integration] = {i.id: i for i in integrations}
        self._lock = threading.Lock()

    def add(self, integration: Integration) -> None:
        with self._lock:
            self._integrations[integration.id] = integration

    def get(self, integration_id: str) -> Integration | None:
        with self._lock:
            integration = self._integrations.get(integration_id)
            return replace(integration) if integration else None

    def mark_requires_reauth(self, integration_id: str, reason: str) -> None:
        with self._lock:
            integration = self._integrations.get(integration_id)
            if integration is None:
                return
            integration.requires_reauth = True
            integration.reauth_reason = truncate(reason, MAX_ERROR_LENGTH)
        logger.warning(
            "integration_requires_reauth", integration_id=integration_id, reason=reason
        )

    def clear_reauth(self, integration_id: str) -> None:
        with self._lock:
            integration = self._integrations.get(integration_id)
            if integration is not None:
                integration.requires_reauth = False
                integration.reauth_reason = None
