"""Result types for reputation checks.

All results are plain dataclasses so they can be cached, compared and
serialized with ``to_dict`` without a validation pass on the hot path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class Verdict(str, Enum):
    """Classification of a single indicator or an email."""

    CLEAN = "clean"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"
    UNKNOWN = "unknown"


class MatchType(str, Enum):
    """How a feed matched an indicator."""

    EXACT = "exact"
    DOMAIN = "domain"
    PATTERN = "pattern"


class RiskLevel(str, Enum):
    """Domain-age risk level."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


# =============================================================================
# Feed Results
# =============================================================================


@dataclass(frozen=True)
class FeedEntry:
    """One known-bad URL published by a feed."""

    url: str
    domain: str
    feed: str
    category: str | None = None
    verified: bool | None = None
    reported_at: datetime | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ThreatSource:
    """Evidence that a feed (or heuristic) matched an indicator."""

    feed: str
    match_type: MatchType
    category: str | None = None
    verified: bool | None = None
    reported_at: datetime | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed": self.feed,
            "match_type": self.match_type.value,
            "category": self.category,
            "description": self.description,
            "verified": self.verified,
            "reported_at": self.reported_at.isoformat() if self.reported_at else None,
        }


@dataclass
class ThreatCheckResult:
    """Merged reputation verdict for a URL or domain.

    Attributes:
        indicator: The normalized URL or domain that was checked
        is_threat: True when any source matched
        verdict: clean, suspicious, malicious or unknown (not verified)
        confidence: Confidence in the verdict, never 1.0 for clean
        sources: Evidence from each matching feed
        checked_at: When the check ran
    """

    indicator: str
    is_threat: bool
    verdict: Verdict
    confidence: float
    sources: list[ThreatSource] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utcnow)

    @classmethod
    def unknown(cls, indicator: str) -> ThreatCheckResult:
        """Result for an indicator that could not be verified."""
        return cls(indicator=indicator, is_threat=False, verdict=Verdict.UNKNOWN, confidence=0.0)

    @property
    def verified(self) -> bool:
        return self.verdict != Verdict.UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator,
            "is_threat": self.is_threat,
            "verdict": self.verdict.value,
            "confidence": self.confidence,
            "sources": [s.to_dict() for s in self.sources],
            "checked_at": self.checked_at.isoformat(),
        }


# =============================================================================
# Domain Results
# =============================================================================


@dataclass(frozen=True)
class RegistrantInfo:
    name: str | None = None
    organization: str | None = None
    country: str | None = None


@dataclass
class WhoisResult:
    """Registration data for a domain."""

    domain: str
    registrar: str | None = None
    created_date: datetime | None = None
    updated_date: datetime | None = None
    expires_date: datetime | None = None
    registrant: RegistrantInfo | None = None
    name_servers: list[str] = field(default_factory=list)
    status: list[str] = field(default_factory=list)
    raw: str | None = None
    estimated: bool = False
    cached: bool = False


@dataclass
class DomainAgeResult:
    """Risk assessment derived from a domain's registration age.

    Attributes:
        domain: Root domain that was assessed
        age_in_days: Days since registration, None when unknown
        risk_level: low, medium, high, critical or unknown
        risk_score: 0.0 - 1.0
        indicators: Machine-readable reasons for the score
        created_date: Registration date if known
        registrar: Registrar name if known
    """

    domain: str
    age_in_days: int | None
    risk_level: RiskLevel
    risk_score: float
    indicators: list[str] = field(default_factory=list)
    created_date: datetime | None = None
    registrar: str | None = None

    @classmethod
    def unknown(cls, domain: str, indicator: str) -> DomainAgeResult:
        """Neutral result used when the registration date cannot be determined."""
        return cls(
            domain=domain,
            age_in_days=None,
            risk_level=RiskLevel.UNKNOWN,
            risk_score=0.5,
            indicators=[indicator],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "age_in_days": self.age_in_days,
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "indicators": list(self.indicators),
            "created_date": self.created_date.isoformat() if self.created_date else None,
            "registrar": self.registrar,
        }


# =============================================================================
# IP Results
# =============================================================================


@dataclass(frozen=True)
class IpSource:
    list_name: str
    description: str
    category: str | None = None


@dataclass
class IpCheckResult:
    """Blocklist verdict for an IPv4 address."""

    ip: str
    is_threat: bool
    verdict: Verdict
    sources: list[IpSource] = field(default_factory=list)
    country_code: str | None = None
    checked_at: datetime = field(default_factory=utcnow)

    @classmethod
    def unknown(cls, ip: str, description: str = "Lookup unavailable") -> IpCheckResult:
        return cls(
            ip=ip,
            is_threat=False,
            verdict=Verdict.UNKNOWN,
            sources=[IpSource(list_name="fallback_unverified", description=description)],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "is_threat": self.is_threat,
            "verdict": self.verdict.value,
            "sources": [
                {"list": s.list_name, "category": s.category, "description": s.description}
                for s in self.sources
            ],
            "country_code": self.country_code,
            "checked_at": self.checked_at.isoformat(),
        }


# =============================================================================
# External Intel Service Results
# =============================================================================


@dataclass
class UrlIntelResult:
    url: str
    is_malicious: bool
    threat_types: list[str] = field(default_factory=list)
    risk_score: int = 0
    last_seen: str | None = None
    sources: list[str] = field(default_factory=list)


@dataclass
class DomainIntelResult:
    domain: str
    is_suspicious: bool
    reputation_score: int
    categories: list[str] = field(default_factory=list)
    registrar: str | None = None
    age_days: int = -1


@dataclass
class IpIntelResult:
    ip: str
    is_proxy: bool = False
    is_tor: bool = False
    is_datacenter: bool = False
    abuse_confidence: int = 0
    country: str | None = None


@dataclass
class IntelSourceVerdict:
    name: str
    verdict: bool | None
    confidence: float


@dataclass
class AggregatedIntelligence:
    """Consensus across the intel service's configured feeds.

    ``consensus_score`` is the share (0-100) of responding feeds that flagged
    the indicator. Feeds that failed are listed with ``verdict=None`` and do
    not count toward the consensus.
    """

    indicator: str
    consensus_score: float
    is_malicious: bool
    sources: list[IntelSourceVerdict] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return any(s.verdict is not None for s in self.sources)
