"""Batch ingestion: check each new message and remediate the dangerous ones.

A batch runs under a wall-clock budget (the ingestion worker is invoked by a
scheduler with a hard time limit). Once the budget is spent no new message is
started; the remaining message IDs are reported as deferred so the next run
picks them up.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog

from mw_core.config import PipelineConfig
from mw_core.intel.models import Verdict
from mw_core.intel.orchestrator import EmailThreatCheckResult, ThreatCheckOrchestrator
from mw_core.mailbox.models import ParsedEmail
from mw_core.remediation.engine import ActionVerdict, RemediationEngine, RemediationResult

logger = structlog.get_logger()


@dataclass
class MessageOutcome:
    message_id: str
    action: ActionVerdict
    check: EmailThreatCheckResult
    remediation: RemediationResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "action": self.action.value,
            "check": self.check.to_dict(),
            "remediation": self.remediation.to_dict() if self.remediation else None,
        }


@dataclass
class BatchReport:
    """What one batch run did.

    Attributes:
        processed: Outcome per message that was checked.
        deferred: Provider message IDs left for the next run.
        budget_exhausted: True if the run stopped because of the time budget.
        elapsed_seconds: Wall-clock duration of the run.
    """

    processed: list[MessageOutcome] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    budget_exhausted: bool = False
    elapsed_seconds: float = 0.0

    @property
    def remediated(self) -> list[MessageOutcome]:
        return [o for o in self.processed if o.remediation is not None]

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": [o.to_dict() for o in self.processed],
            "deferred": list(self.deferred),
            "budget_exhausted": self.budget_exhausted,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


class ThreatPipeline:
    """Runs the orchestrator over a batch and hands threats to remediation."""

    def __init__(
        self,
        orchestrator: ThreatCheckOrchestrator,
        engine: RemediationEngine,
        *,
        config: PipelineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.engine = engine
        self.config = config or PipelineConfig()
        self._clock = clock

    def action_for(self, check: EmailThreatCheckResult) -> ActionVerdict:
        """Map a check result to pass, quarantine or block.

        A malicious verdict is quarantined even below the score threshold.
        A suspicious verdict caused only by unverified indicators stays below
        the quarantine threshold and passes.
        """
        if check.risk_score >= self.config.block_threshold:
            return ActionVerdict.BLOCK
        if (
            check.overall_verdict == Verdict.MALICIOUS
            or check.risk_score >= self.config.quarantine_threshold
        ):
            return ActionVerdict.QUARANTINE
        return ActionVerdict.PASS

    async def process_batch(
        self,
        tenant_id: str,
        integration_id: str,
        messages: Iterable[ParsedEmail],
    ) -> BatchReport:
        """Check and remediate messages until done or out of time.

        Args:
            tenant_id: Owning tenant.
            integration_id: Mailbox the messages came from.
            messages: Parsed messages, processed in order.

        Returns:
            The batch report.
        """
        start = self._clock()
        deadline = start + self.config.budget_seconds
        report = BatchReport()
        pending = list(messages)

        for index, email in enumerate(pending):
            remaining = deadline - self._clock()
            if remaining <= 0:
                report.budget_exhausted = True
                report.deferred = [m.provider_message_id for m in pending[index:]]
                break

            check = await self.orchestrator.check_parsed_email(email, timeout=remaining)
            action = self.action_for(check)
            outcome = MessageOutcome(
                message_id=email.provider_message_id, action=action, check=check
            )

            if action != ActionVerdict.PASS:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    # Flagged but out of time; the next run checks it again.
                    report.budget_exhausted = True
                    report.deferred = [m.provider_message_id for m in pending[index:]]
                    break
                outcome.remediation = await self.engine.auto_remediate(
                    tenant_id=tenant_id,
                    message_id=email.internet_message_id or email.provider_message_id,
                    external_message_id=email.provider_message_id,
                    integration_id=integration_id,
                    integration_type=email.provider,
                    verdict=action,
                    score=check.risk_score,
                    email=email,
                    signals=_signals(check),
                    timeout=remaining,
                )
            report.processed.append(outcome)

        report.elapsed_seconds = self._clock() - start
        log = logger.warning if report.budget_exhausted else logger.info
        log(
            "ingestion_batch_complete",
            tenant_id=tenant_id,
            integration_id=integration_id,
            processed=len(report.processed),
            remediated=len(report.remediated),
            deferred=len(report.deferred),
            budget_exhausted=report.budget_exhausted,
        )
        return report


def _signals(check: EmailThreatCheckResult) -> list[dict[str, Any]]:
    signals: list[dict[str, Any]] = [
        {"type": "url", "indicator": r.indicator, "verdict": r.verdict.value}
        for r in check.url_threats
    ]
    if check.domain_age is not None and check.domain_age.age_in_days is not None:
        signals.append(
            {
                "type": "domain_age",
                "indicator": check.domain_age.domain,
                "age_in_days": check.domain_age.age_in_days,
                "risk_level": check.domain_age.risk_level.value,
            }
        )
    signals.extend(
        {"type": "ip", "indicator": r.ip, "verdict": r.verdict.value} for r in check.ip_threats
    )
    if check.degraded:
        signals.append({"type": "degraded", "services": list(check.degraded_services)})
    return signals
