"""Remediation state machine.

Moves flagged messages between mailbox states and keeps the threat record in
step::

    remediation_pending -> quarantined | remediation_failed
    quarantined         -> released | deleted

Automatic remediation (from the ingestion pipeline) claims the record with a
compare-and-swap to ``remediation_pending`` before touching the mailbox, so a
message is never acted on twice concurrently. Manual actions are attributed
to an analyst and checked against the allowed transitions. Every operation
returns a :class:`RemediationResult`; exceptions never escape.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from mw_core.errors import (
    AuthenticationError,
    InvalidTransitionError,
    MailwardError,
    RemediationTimeoutError,
    UnresolvableMessageError,
)
from mw_core.intel.models import utcnow
from mw_core.mailbox.base import MailboxProvider
from mw_core.mailbox.models import IntegrationType, MailboxTarget, ParsedEmail
from mw_core.remediation.events import (
    AuditEvent,
    AuditSink,
    Notification,
    NotificationSink,
    emit_audit_event,
    emit_notification,
)
from mw_core.remediation.message_ids import (
    GmailId,
    MessageId,
    O365Id,
    classify_message_id,
    validate_external_message_id,
)
from mw_core.remediation.store import (
    MAX_ERROR_LENGTH,
    MAX_EXTERNAL_ID_LENGTH,
    MAX_MESSAGE_ID_LENGTH,
    MAX_TEXT_LENGTH,
    IntegrationRegistry,
    ThreatRecord,
    ThreatStatus,
    ThreatStore,
    truncate,
)

logger = structlog.get_logger()

ProviderFactory = Callable[[str, str, IntegrationType], MailboxProvider]

UNKNOWN_SUBJECT = "(Unknown)"
UNKNOWN_SENDER = "unknown@unknown.com"


class RemediationAction(str, Enum):
    QUARANTINE = "quarantine"
    RELEASE = "release"
    DELETE = "delete"
    BLOCK = "block"


class ActionVerdict(str, Enum):
    """What the pipeline decided to do with a message."""

    PASS = "pass"
    QUARANTINE = "quarantine"
    BLOCK = "block"


@dataclass(frozen=True)
class Actor:
    actor_id: str
    email: str | None = None


SYSTEM_ACTOR = Actor(actor_id="system")


@dataclass
class RemediationResult:
    """Outcome of one remediation operation."""

    success: bool
    action: RemediationAction
    message_id: str
    integration_id: str
    integration_type: IntegrationType | None
    error: str | None = None
    threat_id: str | None = None

    @classmethod
    def ok(cls, action: RemediationAction, threat: ThreatRecord) -> RemediationResult:
        return cls(
            success=True,
            action=action,
            message_id=threat.message_id,
            integration_id=threat.integration_id,
            integration_type=threat.integration_type,
            threat_id=threat.id,
        )

    @classmethod
    def fail(
        cls,
        action: RemediationAction,
        error: str,
        threat: ThreatRecord | None = None,
        *,
        message_id: str = "",
        integration_id: str = "",
        integration_type: IntegrationType | None = None,
    ) -> RemediationResult:
        if threat is not None:
            message_id = threat.message_id
            integration_id = threat.integration_id
            integration_type = threat.integration_type
        return cls(
            success=False,
            action=action,
            message_id=message_id,
            integration_id=integration_id,
            integration_type=integration_type,
            error=error,
            threat_id=threat.id if threat else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action.value,
            "message_id": self.message_id,
            "integration_id": self.integration_id,
            "integration_type": self.integration_type.value if self.integration_type else None,
            "error": self.error,
            "threat_id": self.threat_id,
        }


@dataclass(frozen=True)
class _Transition:
    allowed_from: frozenset[ThreatStatus]
    status: ThreatStatus
    target: MailboxTarget
    audit_action: str
    notification_type: str
    title: str
    severity: str
    verb: str


_MANUAL_TRANSITIONS: dict[RemediationAction, _Transition] = {
    RemediationAction.QUARANTINE: _Transition(
        allowed_from=frozenset(
            {
                ThreatStatus.REMEDIATION_PENDING,
                ThreatStatus.REMEDIATION_FAILED,
                ThreatStatus.QUARANTINED,
                ThreatStatus.RELEASED,
            }
        ),
        status=ThreatStatus.QUARANTINED,
        target=MailboxTarget.QUARANTINE,
        audit_action="threat.quarantine",
        notification_type="threat_quarantined",
        title="Email Quarantined",
        severity="info",
        verb="quarantined",
    ),
    RemediationAction.RELEASE: _Transition(
        allowed_from=frozenset(
            {ThreatStatus.QUARANTINED, ThreatStatus.DELETED, ThreatStatus.RELEASED}
        ),
        status=ThreatStatus.RELEASED,
        target=MailboxTarget.INBOX,
        audit_action="threat.release",
        notification_type="threat_released",
        title="Email Released from Quarantine",
        severity="warning",
        verb="released",
    ),
    RemediationAction.DELETE: _Transition(
        allowed_from=frozenset(
            {
                ThreatStatus.QUARANTINED,
                ThreatStatus.RELEASED,
                ThreatStatus.REMEDIATION_FAILED,
                ThreatStatus.REMEDIATION_PENDING,
                ThreatStatus.DELETED,
            }
        ),
        status=ThreatStatus.DELETED,
        target=MailboxTarget.TRASH,
        audit_action="threat.delete",
        notification_type="threat_deleted",
        title="Email Deleted",
        severity="info",
        verb="deleted",
    ),
}


def _is_provider_native(message_id: MessageId, integration_type: IntegrationType) -> bool:
    if integration_type == IntegrationType.GMAIL:
        return isinstance(message_id, GmailId)
    return isinstance(message_id, O365Id) and message_id.graph_native


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


class RemediationEngine:
    """Applies quarantine, release and delete to flagged messages."""

    def __init__(
        self,
        store: ThreatStore,
        integrations: IntegrationRegistry,
        providers: ProviderFactory,
        *,
        audit: AuditSink | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Threat record persistence.
            integrations: Connected mailboxes and their re-auth state.
            providers: Returns the adapter for (tenant_id, integration_id, type).
            audit: Audit event sink.
            notifier: User notification sink.
        """
        self.store = store
        self.integrations = integrations
        self.providers = providers
        self.audit = audit
        self.notifier = notifier

    # -------------------------------------------------------------------------
    # Manual actions
    # -------------------------------------------------------------------------

    async def quarantine_email(
        self,
        tenant_id: str,
        threat_id: str,
        actor: Actor = SYSTEM_ACTOR,
        *,
        timeout: float | None = None,
    ) -> RemediationResult:
        return await self._apply(RemediationAction.QUARANTINE, tenant_id, threat_id, actor, timeout)

    async def release_email(
        self,
        tenant_id: str,
        threat_id: str,
        actor: Actor = SYSTEM_ACTOR,
        *,
        timeout: float | None = None,
    ) -> RemediationResult:
        return await self._apply(RemediationAction.RELEASE, tenant_id, threat_id, actor, timeout)

    async def delete_email(
        self,
        tenant_id: str,
        threat_id: str,
        actor: Actor = SYSTEM_ACTOR,
        *,
        timeout: float | None = None,
    ) -> RemediationResult:
        return await self._apply(RemediationAction.DELETE, tenant_id, threat_id, actor, timeout)

    async def batch_remediate(
        self,
        tenant_id: str,
        threat_ids: Iterable[str],
        action: RemediationAction | str,
        actor: Actor = SYSTEM_ACTOR,
        *,
        timeout: float | None = None,
    ) -> list[RemediationResult]:
        """Apply one manual action to several threats, in order.

        ``timeout`` bounds each mailbox call, not the whole batch.
        """
        try:
            resolved = RemediationAction(action)
        except ValueError:
            resolved = None
        if resolved not in _MANUAL_TRANSITIONS:
            return [
                RemediationResult.fail(
                    resolved or RemediationAction.QUARANTINE,
                    f"Unsupported action: {getattr(action, 'value', action)}",
                )
                for _ in threat_ids
            ]

        results = []
        for threat_id in threat_ids:
            results.append(await self._apply(resolved, tenant_id, threat_id, actor, timeout))
        return results

    def get_threat(self, tenant_id: str, threat_id: str) -> ThreatRecord | None:
        return self.store.get(tenant_id, threat_id)

    async def _apply(
        self,
        action: RemediationAction,
        tenant_id: str,
        threat_id: str,
        actor: Actor,
        timeout: float | None = None,
    ) -> RemediationResult:
        threat = self.store.get(tenant_id, threat_id)
        if threat is None:
            return RemediationResult.fail(action, "Threat not found")

        transition = _MANUAL_TRANSITIONS[action]
        if threat.status not in transition.allowed_from:
            error = InvalidTransitionError(threat.status.value, transition.status.value)
            logger.warning("remediation_invalid_transition", threat_id=threat.id, error=str(error))
            return RemediationResult.fail(action, str(error), threat)

        if threat.status == transition.status:
            logger.info(
                "remediation_already_applied", threat_id=threat.id, status=threat.status.value
            )
            return RemediationResult.ok(action, threat)

        try:
            new_message_id = await self._move(threat, transition.target, timeout)
        except Exception as e:
            error = _error_text(e)
            logger.error(
                "remediation_failed",
                action=action.value,
                threat_id=threat.id,
                integration_type=threat.integration_type.value,
                error=error,
            )
            self._handle_provider_failure(threat, e)
            self.store.update(
                tenant_id, threat.id, error_message=truncate(error, MAX_ERROR_LENGTH)
            )
            return RemediationResult.fail(action, error, threat)

        updated = self.store.compare_and_set(
            tenant_id,
            threat.id,
            {threat.status},
            transition.status,
            external_message_id=truncate(new_message_id, MAX_EXTERNAL_ID_LENGTH),
            error_message=None,
            remediated_at=utcnow(),
            remediated_by=actor.actor_id,
        )
        if updated is None:
            logger.warning("remediation_concurrent_update", threat_id=threat.id)
            return RemediationResult.fail(
                action, "Threat was modified concurrently; refresh and retry", threat
            )

        logger.info(
            "remediation_applied",
            action=action.value,
            threat_id=updated.id,
            status=updated.status.value,
            actor_id=actor.actor_id,
        )
        await self._record_change(updated, transition, actor)
        return RemediationResult.ok(action, updated)

    # -------------------------------------------------------------------------
    # Automatic remediation
    # -------------------------------------------------------------------------

    async def auto_remediate(
        self,
        *,
        tenant_id: str,
        message_id: str,
        external_message_id: str | None,
        integration_id: str,
        integration_type: IntegrationType,
        verdict: ActionVerdict,
        score: float,
        email: ParsedEmail | None = None,
        signals: list[Any] | None = None,
        timeout: float | None = None,
    ) -> RemediationResult:
        """Quarantine a message flagged by the detection pipeline.

        Blocked messages are quarantined too; nothing is deleted automatically.
        The record is written as ``remediation_pending`` first and ends as
        ``quarantined`` or ``remediation_failed``.

        Args:
            tenant_id: Owning tenant.
            message_id: RFC-5322 Message-ID (provider ID if the header is absent).
            external_message_id: Provider-native message ID.
            integration_id: Mailbox the message was ingested from.
            integration_type: "gmail" or "o365".
            verdict: "quarantine" or "block".
            score: Risk score 0..1.
            email: Parsed message, used for the record's subject and addresses.
            signals: Detection signals stored with the record.
            timeout: Deadline in seconds for the mailbox call. On expiry the
                record ends as ``remediation_failed`` with a timed-out error.

        Returns:
            The result. A message already quarantined is a success without a
            mailbox call.
        """
        action = (
            RemediationAction.BLOCK if verdict == ActionVerdict.BLOCK
            else RemediationAction.QUARANTINE
        )
        if verdict == ActionVerdict.PASS:
            return RemediationResult.fail(
                action,
                "Nothing to remediate for a pass verdict",
                message_id=message_id,
                integration_id=integration_id,
                integration_type=integration_type,
            )

        safe_message_id = truncate(message_id, MAX_MESSAGE_ID_LENGTH) or message_id
        safe_external_id = truncate(external_message_id, MAX_EXTERNAL_ID_LENGTH)
        recipients = email.recipients if email else []
        record = ThreatRecord(
            tenant_id=tenant_id,
            message_id=safe_message_id,
            external_message_id=safe_external_id,
            integration_id=integration_id,
            integration_type=integration_type,
            status=ThreatStatus.REMEDIATION_PENDING,
            verdict=verdict.value,
            score=score,
            subject=truncate(email.subject if email else UNKNOWN_SUBJECT, MAX_TEXT_LENGTH),
            sender_email=truncate(email.sender if email else UNKNOWN_SENDER, MAX_TEXT_LENGTH),
            recipient_email=truncate(recipients[0] if recipients else None, MAX_TEXT_LENGTH),
            signals=list(signals or []),
        )

        threat, created = self.store.create_if_absent(record)
        if not created:
            claimed = self.store.compare_and_set(
                tenant_id,
                threat.id,
                {ThreatStatus.REMEDIATION_FAILED},
                ThreatStatus.REMEDIATION_PENDING,
                verdict=verdict.value,
                score=score,
                external_message_id=threat.external_message_id or safe_external_id,
                signals=list(signals or threat.signals),
                error_message=None,
            )
            if claimed is None:
                return self._skip_existing(action, tenant_id, threat)
            threat = claimed

        try:
            new_message_id = await self._move(threat, MailboxTarget.QUARANTINE, timeout)
        except Exception as e:
            error = _error_text(e)
            logger.error(
                "auto_remediation_failed",
                threat_id=threat.id,
                verdict=verdict.value,
                integration_type=integration_type.value,
                error=error,
            )
            self._handle_provider_failure(threat, e)
            self.store.compare_and_set(
                tenant_id,
                threat.id,
                {ThreatStatus.REMEDIATION_PENDING},
                ThreatStatus.REMEDIATION_FAILED,
                error_message=truncate(error, MAX_ERROR_LENGTH),
            )
            return RemediationResult.fail(action, error, threat)

        updated = self.store.compare_and_set(
            tenant_id,
            threat.id,
            {ThreatStatus.REMEDIATION_PENDING},
            ThreatStatus.QUARANTINED,
            external_message_id=truncate(new_message_id, MAX_EXTERNAL_ID_LENGTH),
            remediated_at=utcnow(),
            remediated_by=SYSTEM_ACTOR.actor_id,
        )
        if updated is None:
            logger.warning("auto_remediation_claim_lost", threat_id=threat.id)
            return RemediationResult.fail(action, "Threat was modified during remediation", threat)

        logger.info(
            "auto_remediation_applied",
            threat_id=updated.id,
            verdict=verdict.value,
            score=score,
            integration_type=integration_type.value,
        )
        await emit_audit_event(
            self.audit,
            AuditEvent(
                tenant_id=tenant_id,
                actor_id=SYSTEM_ACTOR.actor_id,
                action="threat.quarantine",
                resource_type="threat",
                resource_id=updated.id,
                after_state={"status": updated.status.value, "verdict": verdict.value},
            ),
        )
        await emit_notification(
            self.notifier,
            Notification(
                tenant_id=tenant_id,
                type="threat_quarantined",
                title="Threat Auto-Quarantined",
                message=f"A message from {updated.sender_email} was quarantined automatically "
                f"(score {score:.2f}).",
                severity="critical" if verdict == ActionVerdict.BLOCK else "warning",
                resource_type="threat",
                resource_id=updated.id,
                metadata={"verdict": verdict.value, "score": score},
            ),
        )
        return RemediationResult.ok(action, updated)

    def _skip_existing(
        self, action: RemediationAction, tenant_id: str, threat: ThreatRecord
    ) -> RemediationResult:
        current = self.store.get(tenant_id, threat.id) or threat
        if current.status == ThreatStatus.QUARANTINED:
            logger.info("auto_remediation_already_applied", threat_id=current.id)
            return RemediationResult.ok(action, current)
        if current.status == ThreatStatus.REMEDIATION_PENDING:
            return RemediationResult.fail(action, "Remediation already in progress", current)
        logger.info(
            "auto_remediation_skipped", threat_id=current.id, status=current.status.value
        )
        return RemediationResult.fail(
            action, f"Threat already {current.status.value}; skipping", current
        )

    # -------------------------------------------------------------------------
    # Message identity
    # -------------------------------------------------------------------------

    async def resolve_provider_message_id(
        self, provider: MailboxProvider, threat: ThreatRecord
    ) -> str:
        """Find the provider-native ID to act on.

        The stored ``external_message_id`` is preferred and must match the
        integration's ID shape. Otherwise the RFC-5322 Message-ID is used,
        searching the mailbox when it is not already a native ID.

        Raises:
            DataIntegrityError: If the stored ID has the other provider's shape.
            UnresolvableMessageError: If the search finds nothing.
        """
        integration_type = threat.integration_type
        stored = validate_external_message_id(threat.external_message_id, integration_type)
        if stored is not None and _is_provider_native(stored, integration_type):
            return stored.value

        if stored is None:
            fallback = classify_message_id(threat.message_id)
            if _is_provider_native(fallback, integration_type):
                return fallback.value

        found = await provider.search_by_rfc822_message_id(threat.message_id)
        if found is None:
            raise UnresolvableMessageError(
                f"Could not locate message {threat.message_id[:100]} in the "
                f"{integration_type.value} mailbox; manual review required"
            )
        logger.info(
            "message_id_resolved_by_search",
            threat_id=threat.id,
            integration_type=integration_type.value,
        )
        return found

    async def _move(
        self, threat: ThreatRecord, target: MailboxTarget, timeout: float | None
    ) -> str:
        """Resolve the message and move it, within ``timeout`` seconds when given.

        Raises:
            RemediationTimeoutError: If the deadline expires first.
        """

        async def move() -> str:
            provider = self._provider_for(threat)
            provider_message_id = await self.resolve_provider_message_id(provider, threat)
            return await provider.move_or_label(provider_message_id, target)

        if timeout is None:
            return await move()
        try:
            if timeout <= 0:
                raise TimeoutError
            return await asyncio.wait_for(move(), timeout=timeout)
        except TimeoutError as e:
            raise RemediationTimeoutError(max(timeout, 0.0)) from e

    def _provider_for(self, threat: ThreatRecord) -> MailboxProvider:
        integration = self.integrations.get(threat.integration_id)
        if integration is None:
            raise MailwardError("Integration not found")
        if integration.requires_reauth:
            raise MailwardError(
                f"Integration {integration.id} requires re-authentication"
            )
        return self.providers(threat.tenant_id, integration.id, threat.integration_type)

    def _handle_provider_failure(self, threat: ThreatRecord, error: BaseException) -> None:
        if isinstance(error, AuthenticationError):
            self.integrations.mark_requires_reauth(threat.integration_id, _error_text(error))

    async def _record_change(
        self, threat: ThreatRecord, transition: _Transition, actor: Actor
    ) -> None:
        await emit_audit_event(
            self.audit,
            AuditEvent(
                tenant_id=threat.tenant_id,
                actor_id=actor.actor_id,
                actor_email=actor.email,
                action=transition.audit_action,
                resource_type="threat",
                resource_id=threat.id,
                after_state={"status": threat.status.value},
            ),
        )
        await emit_notification(
            self.notifier,
            Notification(
                tenant_id=threat.tenant_id,
                type=transition.notification_type,
                title=transition.title,
                message=f"A threat has been {transition.verb} by {actor.email or 'system'}.",
                severity=transition.severity,
                resource_type="threat",
                resource_id=threat.id,
            ),
        )
