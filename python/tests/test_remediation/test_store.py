"""Tests for the threat store, integration registry and event sinks."""

from __future__ import annotations

import pytest

from mw_core.mailbox.models import IntegrationType
from mw_core.remediation.events import (
    AuditEvent,
    InMemoryAuditLog,
    InMemoryNotifier,
    Notification,
    emit_audit_event,
    emit_notification,
)
from mw_core.remediation.store import (
    InMemoryThreatStore,
    Integration,
    IntegrationRegistry,
    ThreatRecord,
    ThreatStatus,
    truncate,
)


def make_record(message_id: str = "<m1@example.net>", **kwargs) -> ThreatRecord:
    fields = {
        "tenant_id": "t1",
        "message_id": message_id,
        "integration_id": "int-1",
        "integration_type": IntegrationType.GMAIL,
        "status": ThreatStatus.REMEDIATION_PENDING,
        "verdict": "quarantine",
        "score": 0.8,
    }
    fields.update(kwargs)
    return ThreatRecord(**fields)


class TestTruncate:
    def test_short_values_unchanged(self):
        assert truncate("abc", 5) == "abc"

    def test_long_values_end_with_ellipsis(self):
        assert truncate("abcdefghij", 6) == "abc..."

    def test_empty_is_none(self):
        assert truncate("", 5) is None
        assert truncate(None, 5) is None


class TestInMemoryThreatStore:
    def test_create_if_absent_dedupes_by_message(self):
        store = InMemoryThreatStore()
        first, created = store.create_if_absent(make_record())
        second, created_again = store.create_if_absent(make_record(score=0.1))

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.score == 0.8
        assert len(store) == 1

    def test_same_message_in_other_tenant_is_separate(self):
        store = InMemoryThreatStore()
        store.create_if_absent(make_record())
        _, created = store.create_if_absent(make_record(tenant_id="t2"))
        assert created is True

    def test_compare_and_set(self):
        store = InMemoryThreatStore()
        record, _ = store.create_if_absent(make_record())

        moved = store.compare_and_set(
            "t1",
            record.id,
            {ThreatStatus.REMEDIATION_PENDING},
            ThreatStatus.QUARANTINED,
            remediated_by="system",
        )
        lost = store.compare_and_set(
            "t1", record.id, {ThreatStatus.REMEDIATION_PENDING}, ThreatStatus.REMEDIATION_FAILED
        )

        assert moved.status == ThreatStatus.QUARANTINED
        assert moved.remediated_by == "system"
        assert lost is None
        assert store.get("t1", record.id).status == ThreatStatus.QUARANTINED

    def test_returned_records_are_copies(self):
        store = InMemoryThreatStore()
        record, _ = store.create_if_absent(make_record())

        fetched = store.get("t1", record.id)
        fetched.status = ThreatStatus.DELETED

        assert store.get("t1", record.id).status == ThreatStatus.REMEDIATION_PENDING

    def test_tenant_scoping(self):
        store = InMemoryThreatStore()
        record, _ = store.create_if_absent(make_record())
        assert store.get("t2", record.id) is None
        assert store.get_by_message_id("t1", "<m1@example.net>").id == record.id

    def test_list_for_tenant(self):
        store = InMemoryThreatStore()
        store.create_if_absent(make_record("<a@x>"))
        store.create_if_absent(make_record("<b@x>", status=ThreatStatus.QUARANTINED))

        assert len(store.list_for_tenant("t1")) == 2
        quarantined = store.list_for_tenant("t1", ThreatStatus.QUARANTINED)
        assert [r.message_id for r in quarantined] == ["<b@x>"]

    def test_to_dict(self):
        data = make_record().to_dict()
        assert data["status"] == "remediation_pending"
        assert data["integration_type"] == "gmail"
        assert data["remediated_at"] is None


class TestIntegrationRegistry:
    def test_mark_and_clear_reauth(self):
        registry = IntegrationRegistry(
            [Integration(id="int-1", tenant_id="t1", type=IntegrationType.GMAIL)]
        )

        registry.mark_requires_reauth("int-1", "x" * 600)
        flagged = registry.get("int-1")
        assert flagged.requires_reauth is True
        assert len(flagged.reauth_reason) == 500

        registry.clear_reauth("int-1")
        assert registry.get("int-1").requires_reauth is False

    def test_unknown_integration(self):
        registry = IntegrationRegistry()
        registry.mark_requires_reauth("missing", "expired")
        assert registry.get("missing") is None


class BrokenSink:
    async def log_audit_event(self, event):
        raise RuntimeError("audit db down")

    async def send_notification(self, notification):
        raise RuntimeError("smtp down")


class TestEventSinks:
    @pytest.mark.asyncio
    async def test_audit_log_filters_newest_first(self):
        log = InMemoryAuditLog()
        for action in ("threat.quarantine", "threat.release", "threat.quarantine"):
            await emit_audit_event(
                log,
                AuditEvent(
                    tenant_id="t1",
                    actor_id="system",
                    action=action,
                    resource_type="threat",
                    resource_id=action,
                ),
            )

        events = log.get_events(tenant_id="t1", action="threat.quarantine")
        assert len(events) == 2
        assert log.get_events(limit=1)[0].action == "threat.quarantine"

    @pytest.mark.asyncio
    async def test_sink_failures_are_swallowed(self):
        sink = BrokenSink()
        await emit_audit_event(
            sink,
            AuditEvent(
                tenant_id="t1",
                actor_id="system",
                action="threat.delete",
                resource_type="threat",
                resource_id="r1",
            ),
        )
        await emit_notification(
            sink, Notification(tenant_id="t1", type="threat_deleted", title="t", message="m")
        )

    @pytest.mark.asyncio
    async def test_missing_sink_is_noop(self):
        await emit_notification(
            None, Notification(tenant_id="t1", type="x", title="t", message="m")
        )

    @pytest.mark.asyncio
    async def test_notifier_collects(self):
        notifier = InMemoryNotifier()
        await notifier.send_notification(
            Notification(tenant_id="t1", type="threat_released", title="t", message="m")
        )
        assert [n.type for n in notifier.notifications] == ["threat_released"]
        notifier.clear()
        assert notifier.notifications == []
