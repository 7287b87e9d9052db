"""Per-email threat check.

Fans out URL, sender-domain and relay-IP checks concurrently, each behind its
dependency's circuit and a per-indicator timeout, then folds the results into
a single risk score and verdict. Checks never raise: anything that cannot be
verified comes back as ``unknown`` and is charged a share of its weight.

Score (weights from :class:`~mw_core.config.ScoringConfig`):
- URLs: ``url_weight`` x share of URLs flagged, plus the unverified share
  at ``unverified_contribution``
- Sender domain reputation: ``domain_reputation_weight`` x 1.0 (malicious),
  0.5 (suspicious) or ``unverified_contribution`` (unknown)
- New sender domain: ``new_domain_weight`` x the age risk score when the
  domain is younger than ``new_domain_days``
- Relay IPs: ``ip_weight`` x the worst IP (1.0 malicious, 0.5 suspicious)
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from mw_core.config import ScoringConfig
from mw_core.intel.aggregator import FeedAggregator, score_sources
from mw_core.intel.domain_age import DomainAgeAssessor
from mw_core.intel.indicators import extract_root_domain, is_valid_ipv4, normalize_url
from mw_core.intel.ip_blocklists import IpBlocklistChecker
from mw_core.intel.models import (
    DomainAgeResult,
    IpCheckResult,
    IpSource,
    MatchType,
    RiskLevel,
    ThreatCheckResult,
    ThreatSource,
    Verdict,
)
from mw_core.intel.service import INTEL_SERVICE_DEPENDENCY, FallbackIntelService
from mw_core.mailbox.models import ParsedEmail
from mw_core.resilience.circuit_breaker import CircuitBreaker
from mw_core.resilience.fallback import (
    DEADLINE_REASON,
    FallbackResult,
    default_domain_check_result,
    default_ip_check_result,
    default_url_check_result,
    execute_with_fallback,
)

logger = structlog.get_logger()

T = TypeVar("T")

FEEDS_DEPENDENCY = "threat-feeds"
DOMAIN_AGE_DEPENDENCY = "domain-age"
IP_BLOCKLIST_DEPENDENCY = "ip-blocklist"
WHOIS_DEPENDENCY = "whois"

INTEL_ABUSE_THRESHOLD = 75
INTEL_REPUTATION_THRESHOLD = 30

_VERDICT_FACTOR = {Verdict.MALICIOUS: 1.0, Verdict.SUSPICIOUS: 0.5, Verdict.CLEAN: 0.0}


@dataclass
class EmailThreatCheckResult:
    """Combined verdict for one email.

    Attributes:
        url_results: One result per distinct URL checked
        domain_result: Sender-domain feed reputation
        domain_age: Sender-domain registration age risk
        ip_results: One result per distinct relay IP checked
        overall_verdict: clean, suspicious or malicious
        risk_score: 0.0 - 1.0
        degraded: True when any dependency could not be used
        degraded_services: Names of the dependencies that were unavailable
        processing_time_ms: Wall-clock time of the check
    """

    url_results: list[ThreatCheckResult] = field(default_factory=list)
    domain_result: ThreatCheckResult | None = None
    domain_age: DomainAgeResult | None = None
    ip_results: list[IpCheckResult] = field(default_factory=list)
    overall_verdict: Verdict = Verdict.CLEAN
    risk_score: float = 0.0
    degraded: bool = False
    degraded_services: list[str] = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def url_threats(self) -> list[ThreatCheckResult]:
        return [r for r in self.url_results if r.is_threat]

    @property
    def ip_threats(self) -> list[IpCheckResult]:
        return [r for r in self.ip_results if r.is_threat]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_verdict": self.overall_verdict.value,
            "risk_score": self.risk_score,
            "url_results": [r.to_dict() for r in self.url_results],
            "domain_result": self.domain_result.to_dict() if self.domain_result else None,
            "domain_age": self.domain_age.to_dict() if self.domain_age else None,
            "ip_results": [r.to_dict() for r in self.ip_results],
            "degraded": self.degraded,
            "degraded_services": list(self.degraded_services),
            "processing_time_ms": self.processing_time_ms,
        }


# =============================================================================
# Intel service merging
# =============================================================================


def _merge_url_intel(
    result: ThreatCheckResult, intel: FallbackResult[Any] | None
) -> ThreatCheckResult:
    if intel is None or intel.from_fallback:
        return result
    sources = list(result.sources)
    if intel.data.is_malicious:
        threat_types = intel.data.threat_types
        sources.append(
            ThreatSource(
                feed=INTEL_SERVICE_DEPENDENCY,
                match_type=MatchType.EXACT,
                category=threat_types[0] if threat_types else "malicious",
                description=f"Intel risk score {intel.data.risk_score}",
            )
        )
    elif result.verified:
        return result
    verdict, confidence = score_sources(sources)
    return dataclasses.replace(
        result, is_threat=bool(sources), verdict=verdict, confidence=confidence, sources=sources
    )


def _merge_domain_intel(
    result: ThreatCheckResult, intel: FallbackResult[Any] | None
) -> ThreatCheckResult:
    if intel is None or intel.from_fallback:
        return result
    sources = list(result.sources)
    if intel.data.reputation_score < INTEL_REPUTATION_THRESHOLD:
        categories = intel.data.categories
        sources.append(
            ThreatSource(
                feed=INTEL_SERVICE_DEPENDENCY,
                match_type=MatchType.DOMAIN,
                category=categories[0] if categories else "low_reputation",
                description=f"Domain reputation {intel.data.reputation_score}/100",
            )
        )
    elif result.verified:
        return result
    verdict, confidence = score_sources(sources)
    return dataclasses.replace(
        result, is_threat=bool(sources), verdict=verdict, confidence=confidence, sources=sources
    )


def _merge_ip_intel(result: IpCheckResult, intel: FallbackResult[Any] | None) -> IpCheckResult:
    if intel is None or intel.from_fallback:
        return result
    data = intel.data
    if data.is_tor or data.abuse_confidence >= INTEL_ABUSE_THRESHOLD:
        source = IpSource(
            list_name=INTEL_SERVICE_DEPENDENCY,
            category="tor_exit" if data.is_tor else "abuse",
            description=f"Abuse confidence {data.abuse_confidence}%",
        )
        return dataclasses.replace(
            result,
            is_threat=True,
            verdict=Verdict.MALICIOUS,
            sources=[*result.sources, source],
            country_code=result.country_code or data.country,
        )
    if result.verdict == Verdict.UNKNOWN:
        return dataclasses.replace(result, verdict=Verdict.CLEAN, sources=[])
    return result


class _Deadline:
    """What is left of a caller's time budget, measured on the event loop clock."""

    def __init__(self, timeout: float | None) -> None:
        self._expires_at = (
            None if timeout is None else asyncio.get_running_loop().time() + timeout
        )

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - asyncio.get_running_loop().time()

    def limit(self, check_timeout: float) -> tuple[float, bool]:
        """Time allowed for one check, and whether the caller's deadline bounds it."""
        remaining = self.remaining()
        if remaining is None or remaining >= check_timeout:
            return check_timeout, False
        return max(remaining, 0.0), True


# =============================================================================
# Orchestrator
# =============================================================================


class ThreatCheckOrchestrator:
    """Runs every reputation check for one email and scores the result."""

    def __init__(
        self,
        aggregator: FeedAggregator,
        domain_age: DomainAgeAssessor,
        ip_checker: IpBlocklistChecker,
        *,
        breaker: CircuitBreaker,
        intel: FallbackIntelService | None = None,
        config: ScoringConfig | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            aggregator: Feed reputation for URLs and the sender domain.
            domain_age: Sender-domain registration age.
            ip_checker: Relay IP blocklists.
            breaker: Circuit registry shared with the components.
            intel: Optional external intel service merged into each result.
            config: Weights, thresholds and fan-out limits.
        """
        self.aggregator = aggregator
        self.domain_age = domain_age
        self.ip_checker = ip_checker
        self.breaker = breaker
        self.intel = intel
        self.config = config or ScoringConfig()

    async def check_parsed_email(
        self, email: ParsedEmail, *, timeout: float | None = None
    ) -> EmailThreatCheckResult:
        return await self.check_email_threats(
            [u.url for u in email.urls],
            sender_domain=email.sender_domain,
            header_ips=email.header_ips,
            timeout=timeout,
        )

    async def check_email_threats(
        self,
        urls: Iterable[str],
        sender_domain: str | None = None,
        header_ips: Iterable[str] = (),
        *,
        timeout: float | None = None,
    ) -> EmailThreatCheckResult:
        """Check every indicator of one email concurrently.

        Args:
            urls: Links found in the message.
            sender_domain: Domain of the From: address.
            header_ips: Relay IPs from the message headers.
            timeout: Caller deadline in seconds. An indicator that does not
                finish in time is reported as unknown.

        Returns:
            The combined result. Never raises.
        """
        start = time.perf_counter()
        cfg = self.config
        deadline = _Deadline(timeout)
        semaphore = asyncio.Semaphore(cfg.check_concurrency)
        degraded: set[str] = set()

        async def guarded(
            dependency: str,
            operation: Callable[[], Awaitable[T]],
            fallback_fn: Callable[[], T],
        ) -> T:
            # The per-check clock starts once a slot is free; queueing time
            # only eats into the caller's deadline.
            async with semaphore:
                per_check, caller_bound = deadline.limit(cfg.check_timeout_seconds)
                if per_check <= 0:
                    degraded.add(dependency)
                    return fallback_fn()
                outcome = await execute_with_fallback(
                    self.breaker,
                    dependency,
                    operation,
                    fallback_fn,
                    timeout=per_check,
                    timeout_is_failure=not caller_bound,
                )
            if outcome.degraded:
                degraded.add(dependency)
            return outcome.data

        url_list = list(dict.fromkeys(normalize_url(u) for u in urls if u))[: cfg.max_urls]
        ip_list = list(dict.fromkeys(ip.strip() for ip in header_ips if is_valid_ipv4(ip.strip())))
        ip_list = ip_list[: cfg.max_ips]
        domain = extract_root_domain(sender_domain) if sender_domain else None

        def check_url(url: str) -> Awaitable[ThreatCheckResult]:
            return guarded(
                FEEDS_DEPENDENCY,
                lambda: self.aggregator.check_url_reputation(url),
                lambda: ThreatCheckResult.unknown(url),
            )

        def check_ip(ip: str) -> Awaitable[IpCheckResult]:
            return guarded(
                IP_BLOCKLIST_DEPENDENCY,
                lambda: self.ip_checker.check_ip_reputation(ip),
                lambda: IpCheckResult.unknown(ip),
            )

        async def check_domain() -> tuple[ThreatCheckResult | None, DomainAgeResult | None]:
            if not domain:
                return None, None
            return await asyncio.gather(
                guarded(
                    FEEDS_DEPENDENCY,
                    lambda: self.aggregator.check_domain_reputation(domain),
                    lambda: ThreatCheckResult.unknown(domain),
                ),
                guarded(
                    DOMAIN_AGE_DEPENDENCY,
                    lambda: self.domain_age.check_domain_age(domain),
                    lambda: DomainAgeResult.unknown(domain, "domain_age_unavailable"),
                ),
            )

        url_results, ip_results, (domain_result, age_result), intel = await asyncio.gather(
            asyncio.gather(*(check_url(u) for u in url_list)),
            asyncio.gather(*(check_ip(ip) for ip in ip_list)),
            check_domain(),
            self._check_intel(url_list, domain, ip_list, semaphore, deadline),
        )
        url_intel, domain_intel, ip_intel = intel
        url_intel = url_intel or [None] * len(url_results)
        ip_intel = ip_intel or [None] * len(ip_results)

        url_results = [_merge_url_intel(r, i) for r, i in zip(url_results, url_intel)]
        ip_results = [_merge_ip_intel(r, i) for r, i in zip(ip_results, ip_intel)]
        if domain_result is not None:
            domain_result = _merge_domain_intel(domain_result, domain_intel)
        if any(r is not None and r.from_fallback for r in [*url_intel, *ip_intel, domain_intel]):
            degraded.add(INTEL_SERVICE_DEPENDENCY)

        degraded.update(
            self._unverified_services(url_results, domain_result, age_result, ip_results)
        )

        result = EmailThreatCheckResult(
            url_results=list(url_results),
            domain_result=domain_result,
            domain_age=age_result,
            ip_results=list(ip_results),
        )
        result.risk_score = self.score(result)
        result.overall_verdict = self.determine_verdict(result)
        result.degraded_services = sorted(degraded)
        result.degraded = bool(degraded)
        result.processing_time_ms = int((time.perf_counter() - start) * 1000)

        if result.degraded:
            logger.warning(
                "threat_check_degraded",
                degraded_services=result.degraded_services,
                verdict=result.overall_verdict.value,
                risk_score=result.risk_score,
            )
        logger.info(
            "email_threat_check_complete",
            urls=len(url_results),
            ips=len(ip_results),
            sender_domain=domain,
            verdict=result.overall_verdict.value,
            risk_score=result.risk_score,
            duration_ms=result.processing_time_ms,
        )
        return result

    async def _check_intel(
        self,
        urls: list[str],
        domain: str | None,
        ips: list[str],
        semaphore: asyncio.Semaphore,
        deadline: _Deadline,
    ) -> tuple[list[Any] | None, FallbackResult[Any] | None, list[Any] | None]:
        if self.intel is None:
            return None, None, None
        intel = self.intel

        async def limited(
            call: Callable[[], Awaitable[FallbackResult[Any]]],
            default: Callable[[], Any],
        ) -> FallbackResult[Any]:
            async with semaphore:
                remaining = deadline.remaining()
                if remaining is None:
                    return await call()
                try:
                    if remaining <= 0:
                        raise TimeoutError
                    return await asyncio.wait_for(call(), timeout=remaining)
                except TimeoutError:
                    return FallbackResult(
                        data=default(), from_fallback=True, degraded=True, reason=DEADLINE_REASON
                    )

        def url_call(u: str) -> Awaitable[FallbackResult[Any]]:
            return limited(lambda: intel.check_url(u), lambda: default_url_check_result(u))

        def ip_call(ip: str) -> Awaitable[FallbackResult[Any]]:
            return limited(lambda: intel.check_ip(ip), lambda: default_ip_check_result(ip))

        async def domain_call() -> FallbackResult[Any] | None:
            if not domain:
                return None
            return await limited(
                lambda: intel.check_domain(domain), lambda: default_domain_check_result(domain)
            )

        url_intel, ip_intel, domain_intel = await asyncio.gather(
            asyncio.gather(*(url_call(u) for u in urls)),
            asyncio.gather(*(ip_call(ip) for ip in ips)),
            domain_call(),
        )
        return list(url_intel), domain_intel, list(ip_intel)

    @staticmethod
    def _unverified_services(
        url_results: Iterable[ThreatCheckResult],
        domain_result: ThreatCheckResult | None,
        age_result: DomainAgeResult | None,
        ip_results: Iterable[IpCheckResult],
    ) -> set[str]:
        services = set()
        if any(not r.verified for r in url_results) or (
            domain_result is not None and not domain_result.verified
        ):
            services.add(FEEDS_DEPENDENCY)
        if age_result is not None and "whois_lookup_failed" in age_result.indicators:
            services.add(WHOIS_DEPENDENCY)
        if any(r.verdict == Verdict.UNKNOWN for r in ip_results):
            services.add(IP_BLOCKLIST_DEPENDENCY)
        return services

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score(self, result: EmailThreatCheckResult) -> float:
        """Weighted 0-1 risk score; unverified indicators count partially."""
        cfg = self.config
        unverified = cfg.unverified_contribution
        score = 0.0

        if result.url_results:
            total = len(result.url_results)
            flagged = sum(1 for r in result.url_results if r.is_threat)
            unknown = sum(1 for r in result.url_results if not r.verified)
            score += cfg.url_weight * (flagged + unknown * unverified) / total

        if result.domain_result is not None:
            if result.domain_result.verified:
                factor = _VERDICT_FACTOR[result.domain_result.verdict]
            else:
                factor = unverified
            score += cfg.domain_reputation_weight * factor

        age = result.domain_age
        if age is not None:
            if age.risk_level == RiskLevel.UNKNOWN:
                score += cfg.new_domain_weight * unverified
            elif age.age_in_days is not None and age.age_in_days < cfg.new_domain_days:
                score += cfg.new_domain_weight * age.risk_score

        if result.ip_results:
            worst = max(
                _VERDICT_FACTOR.get(r.verdict, unverified) for r in result.ip_results
            )
            score += cfg.ip_weight * worst

        return round(min(1.0, score), 4)

    def determine_verdict(self, result: EmailThreatCheckResult) -> Verdict:
        """Map the score and corroborating signals to clean/suspicious/malicious.

        A malicious URL is enough on its own when it is corroborated (verified
        or listed by several feeds), or when the sender domain is new or a
        relay IP is listed. Any unverified indicator keeps the verdict at
        suspicious or above.
        """
        cfg = self.config
        if result.risk_score >= cfg.malicious_threshold:
            return Verdict.MALICIOUS

        malicious_urls = [r for r in result.url_results if r.verdict == Verdict.MALICIOUS]
        if malicious_urls:
            corroborated = any(r.confidence >= 0.95 for r in malicious_urls)
            domain_flagged = (
                result.domain_result is not None
                and result.domain_result.verdict == Verdict.MALICIOUS
            )
            age = result.domain_age
            new_domain = (
                age is not None
                and age.age_in_days is not None
                and age.age_in_days < cfg.new_domain_days
            )
            if corroborated or new_domain or domain_flagged or result.ip_threats:
                return Verdict.MALICIOUS

        if result.risk_score >= cfg.suspicious_threshold:
            return Verdict.SUSPICIOUS
        if result.url_threats or result.ip_threats:
            return Verdict.SUSPICIOUS
        if result.domain_result is not None and result.domain_result.is_threat:
            return Verdict.SUSPICIOUS

        unverified = (
            any(not r.verified for r in result.url_results)
            or any(r.verdict == Verdict.UNKNOWN for r in result.ip_results)
            or (result.domain_result is not None and not result.domain_result.verified)
            or (result.domain_age is not None and result.domain_age.risk_level == RiskLevel.UNKNOWN)
        )
        return Verdict.SUSPICIOUS if unverified else Verdict.CLEAN
