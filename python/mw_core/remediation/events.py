"""Audit events and user notifications for mailbox changes.

Sinks are fire-and-forget: :func:`emit_audit_event` and
:func:`emit_notification` log sink failures and never raise, so a broken
audit backend cannot turn a completed mailbox change into a failure.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog

from mw_core.intel.models import utcnow

logger = structlog.get_logger()


@dataclass
class AuditEvent:
    tenant_id: str
    actor_id: str
    action: str
    resource_type: str
    resource_id: str
    actor_email: str | None = None
    after_state: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    tenant_id: str
    type: str
    title: str
    message: str
    severity: str = "info"
    resource_type: str | None = None
    resource_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    async def log_audit_event(self, event: AuditEvent) -> None: ...


class NotificationSink(Protocol):
    async def send_notification(self, notification: Notification) -> None: ...


async def emit_audit_event(sink: AuditSink | None, event: AuditEvent) -> None:
    if sink is None:
        return
    try:
        await sink.log_audit_event(event)
    except Exception as e:
        logger.error(
            "audit_event_failed",
            action=event.action,
            resource_id=event.resource_id,
            error=str(e),
        )


async def emit_notification(sink: NotificationSink | None, notification: Notification) -> None:
    if sink is None:
        return
    try:
        await sink.send_notification(notification)
    except Exception as e:
        logger.error(
            "notification_failed",
            type=notification.type,
            resource_id=notification.resource_id,
            error=str(e),
        )


class InMemoryAuditLog:
    """Keeps the most recent audit events in memory."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._events: deque[AuditEvent] = deque(maxlen=max_entries)

    async def log_audit_event(self, event: AuditEvent) -> None:
        self._events.append(event)

    def get_events(
        self,
        tenant_id: str | None = None,
        action: str | None = None,
        limit: int = 50,
    ) -> list[AuditEvent]:
        """Most recent events first, optionally filtered."""
        events = list(reversed(self._events))
        if tenant_id is not None:
            events = [e for e in events if e.tenant_id == tenant_id]
        if action is not None:
            events = [e for e in events if e.action == action]
        return events[:limit]

    def clear(self) -> None:
        self._events.clear()


class InMemoryNotifier:
    """Collects notifications in memory."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._notifications: deque[Notification] = deque(maxlen=max_entries)

    async def send_notification(self, notification: Notification) -> None:
        self._notifications.append(notification)

    @property
    def notifications(self) -> list[Notification]:
        return list(self._notifications)

    def clear(self) -> None:
        self._notifications.clear()
