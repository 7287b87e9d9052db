"""Mailbox remediation: threat records, the state machine and its event sinks."""

from mw_core.remediation.engine import (
    SYSTEM_ACTOR,
    ActionVerdict,
    Actor,
    ProviderFactory,
    RemediationAction,
    RemediationEngine,
    RemediationResult,
)
from mw_core.remediation.events import (
    AuditEvent,
    AuditSink,
    InMemoryAuditLog,
    InMemoryNotifier,
    Notification,
    NotificationSink,
)
from mw_core.remediation.message_ids import (
    GmailId,
    MessageId,
    O365Id,
    UnknownId,
    classify_message_id,
    validate_external_message_id,
)
from mw_core.remediation.store import (
    InMemoryThreatStore,
    Integration,
    IntegrationRegistry,
    ThreatRecord,
    ThreatStatus,
    ThreatStore,
    truncate,
)

__all__ = [
    # Engine
    "ActionVerdict",
    "Actor",
    "ProviderFactory",
    "RemediationAction",
    "RemediationEngine",
    "RemediationResult",
    "SYSTEM_ACTOR",
    # Message IDs
    "GmailId",
    "MessageId",
    "O365Id",
    "UnknownId",
    "classify_message_id",
    "validate_external_message_id",
    # Store
    "InMemoryThreatStore",
    "Integration",
    "IntegrationRegistry",
    "ThreatRecord",
    "ThreatStatus",
    "ThreatStore",
    "truncate",
    # Events
    "AuditEvent",
    "AuditSink",
    "InMemoryAuditLog",
    "InMemoryNotifier",
    "Notification",
    "NotificationSink",
]
