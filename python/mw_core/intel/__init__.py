"""Threat intelligence: indicator helpers, caches, feeds and reputation checks.

The external API client (:mod:`mw_core.intel.service`) and the per-email
orchestrator (:mod:`mw_core.intel.orchestrator`) are imported from their
modules directly.
"""

from mw_core.intel.models import (
    AggregatedIntelligence,
    DomainAgeResult,
    DomainIntelResult,
    FeedEntry,
    IntelSourceVerdict,
    IpCheckResult,
    IpIntelResult,
    IpSource,
    MatchType,
    RegistrantInfo,
    RiskLevel,
    ThreatCheckResult,
    ThreatSource,
    UrlIntelResult,
    Verdict,
    WhoisResult,
)
from mw_core.intel.indicators import (
    ExtractedURL,
    extract_domain,
    extract_ips_from_headers,
    extract_root_domain,
    extract_urls,
    extract_urls_from_html,
    get_tld,
    is_private_ip,
    is_valid_ipv4,
    normalize_url,
)
from mw_core.intel.cache import CacheStats, ThreatIntelCache, TTLCache
from mw_core.intel.aggregator import FeedAggregator, score_sources
from mw_core.intel.whois import WhoisClient, parse_whois_response
from mw_core.intel.domain_age import DomainAgeAssessor, quick_domain_age_risk
from mw_core.intel.ip_blocklists import IpBlocklistChecker

__all__ = [
    # Models
    "AggregatedIntelligence",
    "DomainAgeResult",
    "DomainIntelResult",
    "FeedEntry",
    "IntelSourceVerdict",
    "IpCheckResult",
    "IpIntelResult",
    "IpSource",
    "MatchType",
    "RegistrantInfo",
    "RiskLevel",
    "ThreatCheckResult",
    "ThreatSource",
    "UrlIntelResult",
    "Verdict",
    "WhoisResult",
    # Indicators
    "ExtractedURL",
    "extract_domain",
    "extract_ips_from_headers",
    "extract_root_domain",
    "extract_urls",
    "extract_urls_from_html",
    "get_tld",
    "is_private_ip",
    "is_valid_ipv4",
    "normalize_url",
    # Caching
    "CacheStats",
    "ThreatIntelCache",
    "TTLCache",
    # Checks
    "DomainAgeAssessor",
    "FeedAggregator",
    "IpBlocklistChecker",
    "WhoisClient",
    "parse_whois_response",
    "quick_domain_age_risk",
    "score_sources",
]
