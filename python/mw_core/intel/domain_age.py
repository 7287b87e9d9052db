"""Domain registration age risk.

Newly registered domains are a strong phishing signal. The assessor resolves
a domain's registration date through WHOIS and maps its age to a risk level,
then nudges the score for abuse-prone TLDs and privacy-redacted registrants.
An unknown age is reported as ``unknown`` with a neutral 0.5 score.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

import structlog

from mw_core.config import DomainAgeConfig
from mw_core.intel.indicators import extract_root_domain, get_tld
from mw_core.intel.models import DomainAgeResult, RiskLevel, WhoisResult, utcnow
from mw_core.intel.whois import WhoisClient
from mw_core.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()

WHOIS_DEPENDENCY = "whois"

CRITICAL_AGE_DAYS = 7
HIGH_AGE_DAYS = 30
MEDIUM_AGE_DAYS = 90
LOW_AGE_DAYS = 365

SUSPICIOUS_TLD_PENALTY = 0.15
PRIVACY_PENALTY = 0.1

TRUSTED_DOMAINS = frozenset(
    {
        "google.com",
        "microsoft.com",
        "apple.com",
        "amazon.com",
        "facebook.com",
        "twitter.com",
        "linkedin.com",
        "github.com",
        "cloudflare.com",
        "amazonaws.com",
        "azure.com",
        "salesforce.com",
        "shopify.com",
        "stripe.com",
        "zoom.us",
        "slack.com",
        "dropbox.com",
        "box.com",
        "atlassian.com",
        "zendesk.com",
    }
)

SUSPICIOUS_TLDS = frozenset(
    {
        "tk",
        "ml",
        "ga",
        "cf",
        "gq",
        "xyz",
        "top",
        "club",
        "online",
        "site",
        "work",
        "click",
        "link",
        "loan",
        "win",
        "racing",
        "review",
        "stream",
        "download",
    }
)

PRIVACY_MARKERS = ("privacy", "redacted")

_NUMERIC_RUN = re.compile(r"\d{4,}")


@dataclass(frozen=True)
class QuickAgeRisk:
    """Cheap pre-WHOIS estimate."""

    risk_level: RiskLevel
    reason: str


def is_trusted_domain(domain: str) -> bool:
    return extract_root_domain(domain) in TRUSTED_DOMAINS


def _score_age(age_in_days: int) -> tuple[RiskLevel, float, str]:
    if age_in_days < CRITICAL_AGE_DAYS:
        return RiskLevel.CRITICAL, 0.95, "newly_registered_critical"
    if age_in_days < HIGH_AGE_DAYS:
        return RiskLevel.HIGH, 0.8, "newly_registered_high"
    if age_in_days < MEDIUM_AGE_DAYS:
        return RiskLevel.MEDIUM, 0.5, "recently_registered"
    if age_in_days < LOW_AGE_DAYS:
        return RiskLevel.LOW, 0.3, "established_domain"
    return RiskLevel.LOW, 0.1, "mature_domain"


def _unknown(domain: str, reason: str, extra: list[str]) -> DomainAgeResult:
    result = DomainAgeResult.unknown(domain, reason)
    result.indicators.extend(extra)
    return result


def _is_privacy_protected(whois: WhoisResult) -> bool:
    registrant = whois.registrant
    if registrant is None:
        return False
    fields = (registrant.name or "", registrant.organization or "")
    return any(marker in f.lower() for f in fields for marker in PRIVACY_MARKERS)


def quick_domain_age_risk(domain: str) -> QuickAgeRisk:
    """Classify a domain from its name alone, without a WHOIS lookup."""
    root = extract_root_domain(domain)
    if root in TRUSTED_DOMAINS:
        return QuickAgeRisk(RiskLevel.LOW, "trusted_domain")

    tld = get_tld(root)
    if tld in SUSPICIOUS_TLDS:
        return QuickAgeRisk(RiskLevel.HIGH, f"suspicious_tld:{tld}")
    if _NUMERIC_RUN.search(root):
        return QuickAgeRisk(RiskLevel.MEDIUM, "numeric_pattern")
    if len(root) > 30:
        return QuickAgeRisk(RiskLevel.MEDIUM, "long_domain")
    if root.count("-") > 3:
        return QuickAgeRisk(RiskLevel.MEDIUM, "excessive_hyphens")
    return QuickAgeRisk(RiskLevel.UNKNOWN, "needs_whois_lookup")


class DomainAgeAssessor:
    """Scores domains by registration age."""

    def __init__(
        self,
        whois: WhoisClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        config: DomainAgeConfig | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the assessor.

        Args:
            whois: Registration lookup client.
            breaker: Optional circuit registry; lookups are skipped while the
                "whois" circuit is open.
            config: Lookup concurrency settings.
            now: Time source for age calculation.
        """
        self.config = config or DomainAgeConfig()
        self.whois = whois or WhoisClient(self.config, now=now)
        self.breaker = breaker
        self._now = now

    async def check_domain_age(self, domain: str) -> DomainAgeResult:
        """Assess the registration-age risk of ``domain``'s root domain."""
        root = extract_root_domain(domain)
        if root in TRUSTED_DOMAINS:
            return DomainAgeResult(
                domain=root,
                age_in_days=None,
                risk_level=RiskLevel.LOW,
                risk_score=0.1,
                indicators=["trusted_domain"],
            )

        tld = get_tld(root)
        tld_indicators = [f"suspicious_tld:{tld}"] if tld in SUSPICIOUS_TLDS else []

        whois = await self._lookup(root)
        if whois is None:
            return _unknown(root, "whois_lookup_failed", tld_indicators)
        if whois.created_date is None:
            return _unknown(root, "no_creation_date", tld_indicators)

        age_in_days = max(0, (self._now() - whois.created_date).days)
        risk_level, risk_score, age_indicator = _score_age(age_in_days)
        indicators = [*tld_indicators, age_indicator]

        if tld_indicators:
            risk_score = min(1.0, risk_score + SUSPICIOUS_TLD_PENALTY)
            if risk_level == RiskLevel.LOW and risk_score >= 0.4:
                risk_level = RiskLevel.MEDIUM

        if _is_privacy_protected(whois):
            indicators.append("privacy_protected")
            if age_in_days < MEDIUM_AGE_DAYS:
                risk_score = min(1.0, risk_score + PRIVACY_PENALTY)

        return DomainAgeResult(
            domain=root,
            age_in_days=age_in_days,
            risk_level=risk_level,
            risk_score=round(risk_score, 4),
            indicators=indicators,
            created_date=whois.created_date,
            registrar=whois.registrar,
        )

    async def check_multiple_domain_ages(
        self, domains: Iterable[str]
    ) -> dict[str, DomainAgeResult]:
        """Assess each distinct root domain, a few lookups at a time."""
        roots = list(dict.fromkeys(extract_root_domain(d) for d in domains))
        semaphore = asyncio.Semaphore(self.config.max_concurrent_lookups)

        async def check(root: str) -> DomainAgeResult:
            async with semaphore:
                return await self.check_domain_age(root)

        results = await asyncio.gather(*(check(r) for r in roots))
        return {r.domain: r for r in results}

    async def _lookup(self, root: str) -> WhoisResult | None:
        if self.breaker is not None and self.breaker.is_circuit_open(WHOIS_DEPENDENCY):
            logger.debug("whois_skipped_circuit_open", domain=root)
            return None
        try:
            result = await self.whois.lookup(root)
        except Exception as e:
            if self.breaker is not None:
                self.breaker.record_failure(WHOIS_DEPENDENCY)
            logger.warning("whois_lookup_failed", domain=root, error=str(e))
            return None
        if self.breaker is not None:
            self.breaker.record_success(WHOIS_DEPENDENCY)
        return result
