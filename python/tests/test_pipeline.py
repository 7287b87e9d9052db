"""Tests for budgeted batch ingestion."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mw_core.config import PipelineConfig
from mw_core.intel.models import (
    DomainAgeResult,
    IpCheckResult,
    RiskLevel,
    ThreatCheckResult,
    Verdict,
)
from mw_core.intel.orchestrator import EmailThreatCheckResult
from mw_core.mailbox.models import IntegrationType
from mw_core.pipeline import ThreatPipeline
from mw_core.remediation.engine import (
    ActionVerdict,
    RemediationAction,
    RemediationEngine,
    RemediationResult,
)
from mw_core.remediation.store import (
    InMemoryThreatStore,
    Integration,
    IntegrationRegistry,
    ThreatStatus,
)


def check(score: float, verdict: Verdict = Verdict.CLEAN, **kwargs) -> EmailThreatCheckResult:
    return EmailThreatCheckResult(risk_score=score, overall_verdict=verdict, **kwargs)


def ok_result(message_id: str) -> RemediationResult:
    return RemediationResult(
        success=True,
        action=RemediationAction.QUARANTINE,
        message_id=message_id,
        integration_id="gmail-1",
        integration_type=None,
    )


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.auto_remediate = AsyncMock(side_effect=lambda **kw: ok_result(kw["message_id"]))
    return engine


def make_pipeline(results, engine, clock, **config) -> tuple[ThreatPipeline, MagicMock]:
    orchestrator = MagicMock()
    orchestrator.check_parsed_email = AsyncMock(side_effect=results)
    pipeline = ThreatPipeline(
        orchestrator, engine, config=PipelineConfig(**config), clock=clock
    )
    return pipeline, orchestrator


class TestActionFor:
    @pytest.mark.parametrize(
        "score,verdict,expected",
        [
            (0.9, Verdict.MALICIOUS, ActionVerdict.BLOCK),
            (0.85, Verdict.SUSPICIOUS, ActionVerdict.BLOCK),
            (0.6, Verdict.SUSPICIOUS, ActionVerdict.QUARANTINE),
            (0.4, Verdict.MALICIOUS, ActionVerdict.QUARANTINE),
            (0.5, Verdict.SUSPICIOUS, ActionVerdict.PASS),
            (0.0, Verdict.CLEAN, ActionVerdict.PASS),
        ],
    )
    def test_thresholds(self, engine, clock, score, verdict, expected):
        pipeline, _ = make_pipeline([], engine, clock)
        assert pipeline.action_for(check(score, verdict)) == expected


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_remediates_only_threats(self, engine, clock, email_factory):
        malicious = check(
            0.65,
            Verdict.MALICIOUS,
            url_results=[
                ThreatCheckResult(
                    indicator="https://evil.example/login",
                    is_threat=True,
                    verdict=Verdict.MALICIOUS,
                    confidence=0.95,
                )
            ],
            domain_age=DomainAgeResult(
                domain="evil.example",
                age_in_days=3,
                risk_level=RiskLevel.CRITICAL,
                risk_score=0.95,
            ),
            ip_results=[IpCheckResult(ip="8.8.4.4", is_threat=True, verdict=Verdict.MALICIOUS)],
        )
        pipeline, _ = make_pipeline([check(0.0), malicious], engine, clock)
        emails = [
            email_factory(provider_message_id="aaa111"),
            email_factory(provider_message_id="bbb222", internet_message_id="<evil@x.example>"),
        ]

        report = await pipeline.process_batch("tenant-1", "gmail-1", emails)

        assert [o.action for o in report.processed] == [
            ActionVerdict.PASS,
            ActionVerdict.QUARANTINE,
        ]
        assert report.processed[0].remediation is None
        assert len(report.remediated) == 1
        assert report.deferred == []
        assert report.budget_exhausted is False

        kwargs = engine.auto_remediate.await_args.kwargs
        assert kwargs["message_id"] == "<evil@x.example>"
        assert kwargs["external_message_id"] == "bbb222"
        assert kwargs["verdict"] == ActionVerdict.QUARANTINE
        assert kwargs["score"] == 0.65
        assert [s["type"] for s in kwargs["signals"]] == ["url", "domain_age", "ip"]
        assert kwargs["timeout"] == 50.0

    @pytest.mark.asyncio
    async def test_missing_header_id_falls_back_to_provider_id(
        self, engine, clock, email_factory
    ):
        pipeline, _ = make_pipeline([check(0.9, Verdict.MALICIOUS)], engine, clock)

        await pipeline.process_batch(
            "tenant-1", "gmail-1", [email_factory(internet_message_id=None)]
        )

        kwargs = engine.auto_remediate.await_args.kwargs
        assert kwargs["message_id"] == "18c2f0a1b2c3d4e5"
        assert kwargs["verdict"] == ActionVerdict.BLOCK

    @pytest.mark.asyncio
    async def test_degraded_only_check_passes(self, engine, clock, email_factory):
        degraded = check(
            0.5,
            Verdict.SUSPICIOUS,
            degraded=True,
            degraded_services=["domain-age", "ip-blocklist", "threat-feeds"],
        )
        pipeline, _ = make_pipeline([degraded], engine, clock)

        report = await pipeline.process_batch("tenant-1", "gmail-1", [email_factory()])

        assert report.processed[0].action == ActionVerdict.PASS
        engine.auto_remediate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_budget_exhaustion_defers_rest(self, engine, clock, email_factory):
        async def slow_check(email, timeout):
            clock.advance(30)
            return check(0.0)

        pipeline, orchestrator = make_pipeline(None, engine, clock, budget_seconds=50)
        orchestrator.check_parsed_email.side_effect = slow_check
        emails = [email_factory(provider_message_id=f"m{i}") for i in range(4)]

        report = await pipeline.process_batch("tenant-1", "gmail-1", emails)

        assert [o.message_id for o in report.processed] == ["m0", "m1"]
        assert report.deferred == ["m2", "m3"]
        assert report.budget_exhausted is True
        assert report.elapsed_seconds == 60
        timeouts = [c.kwargs["timeout"] for c in orchestrator.check_parsed_email.await_args_list]
        assert timeouts == [50, 20]

    @pytest.mark.asyncio
    async def test_report_to_dict(self, engine, clock, email_factory):
        pipeline, _ = make_pipeline([check(0.9, Verdict.MALICIOUS)], engine, clock)

        report = await pipeline.process_batch("tenant-1", "gmail-1", [email_factory()])
        data = report.to_dict()

        assert data["processed"][0]["action"] == "block"
        assert data["processed"][0]["check"]["overall_verdict"] == "malicious"
        assert data["processed"][0]["remediation"]["success"] is True
        assert data["budget_exhausted"] is False

    @pytest.mark.asyncio
    async def test_remediation_gets_remaining_budget(self, engine, clock, email_factory):
        async def slow_check(email, timeout):
            clock.advance(30)
            return check(0.9, Verdict.MALICIOUS)

        pipeline, orchestrator = make_pipeline(None, engine, clock, budget_seconds=50)
        orchestrator.check_parsed_email.side_effect = slow_check

        await pipeline.process_batch("tenant-1", "gmail-1", [email_factory()])

        assert engine.auto_remediate.await_args.kwargs["timeout"] == 20

    @pytest.mark.asyncio
    async def test_flagged_message_deferred_when_budget_spent(
        self, engine, clock, email_factory
    ):
        async def slow_check(email, timeout):
            clock.advance(60)
            return check(0.9, Verdict.MALICIOUS)

        pipeline, orchestrator = make_pipeline(None, engine, clock, budget_seconds=50)
        orchestrator.check_parsed_email.side_effect = slow_check
        emails = [email_factory(provider_message_id=f"m{i}") for i in range(2)]

        report = await pipeline.process_batch("tenant-1", "gmail-1", emails)

        assert report.processed == []
        assert report.deferred == ["m0", "m1"]
        assert report.budget_exhausted is True
        engine.auto_remediate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_mailbox_cannot_overrun_budget(self, email_factory):
        store = InMemoryThreatStore()
        integrations = IntegrationRegistry(
            [Integration(id="gmail-1", tenant_id="tenant-1", type=IntegrationType.GMAIL)]
        )

        async def stall(mid, target):
            await asyncio.sleep(2)
            return mid

        provider = MagicMock()
        provider.move_or_label = AsyncMock(side_effect=stall)
        engine = RemediationEngine(store, integrations, MagicMock(return_value=provider))
        orchestrator = MagicMock()
        orchestrator.check_parsed_email = AsyncMock(return_value=check(0.9, Verdict.MALICIOUS))
        pipeline = ThreatPipeline(
            orchestrator, engine, config=PipelineConfig(budget_seconds=0.5)
        )

        report = await pipeline.process_batch("tenant-1", "gmail-1", [email_factory()])

        assert report.elapsed_seconds < 1.5
        (outcome,) = report.processed
        assert outcome.remediation.success is False
        assert "timed out" in outcome.remediation.error
        record = store.get("tenant-1", outcome.remediation.threat_id)
        assert record.status == ThreatStatus.REMEDIATION_FAILED
