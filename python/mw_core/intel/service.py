"""Client for the external threat-intelligence API.

:class:`ThreatIntelService` is a thin cached client that raises on failure.
:class:`FallbackIntelService` is what the rest of the system uses: it puts the
client behind the "threat-intel-service" circuit and replaces any failure with
a neutral, explicitly unverified result.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from mw_core.config import IntelServiceConfig
from mw_core.intel.cache import TTLCache
from mw_core.intel.models import (
    AggregatedIntelligence,
    DomainIntelResult,
    IntelSourceVerdict,
    IpIntelResult,
    UrlIntelResult,
)
from mw_core.resilience.circuit_breaker import CircuitBreaker
from mw_core.resilience.fallback import (
    FallbackResult,
    default_domain_check_result,
    default_ip_check_result,
    default_url_check_result,
    execute_with_fallback,
)

logger = structlog.get_logger()

INTEL_SERVICE_DEPENDENCY = "threat-intel-service"

URL_RISK_THRESHOLD = 70
DOMAIN_REPUTATION_THRESHOLD = 30
CONSENSUS_THRESHOLD = 50.0


class ThreatIntelService:
    """Cached client for URL, domain and IP lookups."""

    def __init__(
        self,
        config: IntelServiceConfig,
        *,
        client: httpx.AsyncClient | None = None,
        cache_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            config: API endpoint, key and the feeds used for consensus.
            client: HTTP client. One bound to ``config.base_url`` is created
                when omitted.
            cache_ttl_seconds: Lifetime of cached lookups.
            clock: Time source for the caches.

        Raises:
            ValueError: If no API key is configured.
        """
        if not config.api_key:
            raise ValueError("Threat intel API key is required (THREAT_INTEL_API_KEY)")
        self.config = config
        self.client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout_seconds,
        )
        self._url_cache: TTLCache[UrlIntelResult] = TTLCache(
            cache_ttl_seconds, 10_000, name="intel_urls", clock=clock
        )
        self._domain_cache: TTLCache[DomainIntelResult] = TTLCache(
            cache_ttl_seconds, 10_000, name="intel_domains", clock=clock
        )
        self._ip_cache: TTLCache[IpIntelResult] = TTLCache(
            cache_ttl_seconds, 10_000, name="intel_ips", clock=clock
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {"api-key": self.config.api_key or ""}

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self.client.post(path, json=payload, headers=self._headers)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response from {path}: {type(data).__name__}")
        return data

    async def check_url(self, url: str) -> UrlIntelResult:
        cached = self._url_cache.get(url)
        if cached is not None:
            return cached

        data = await self._post("/url/check", {"url": url})
        threat_types = list(data.get("threat_types") or [])
        risk_score = int(data.get("risk_score") or 0)
        result = UrlIntelResult(
            url=data.get("url") or url,
            is_malicious=bool(threat_types) or risk_score > URL_RISK_THRESHOLD,
            threat_types=threat_types,
            risk_score=risk_score,
            last_seen=data.get("last_seen"),
            sources=list(data.get("sources") or []),
        )
        self._url_cache.set(url, result)
        return result

    async def check_domain(self, domain: str) -> DomainIntelResult:
        cached = self._domain_cache.get(domain)
        if cached is not None:
            return cached

        data = await self._post("/domain/check", {"domain": domain})
        reputation = data.get("reputation_score")
        reputation_score = 50 if reputation is None else int(reputation)
        categories = list(data.get("categories") or [])
        age_days = data.get("age_days")
        result = DomainIntelResult(
            domain=data.get("domain") or domain,
            is_suspicious=reputation_score < DOMAIN_REPUTATION_THRESHOLD or bool(categories),
            reputation_score=reputation_score,
            categories=categories,
            registrar=data.get("registrar"),
            age_days=-1 if age_days is None else int(age_days),
        )
        self._domain_cache.set(domain, result)
        return result

    async def check_ip(self, ip: str) -> IpIntelResult:
        cached = self._ip_cache.get(ip)
        if cached is not None:
            return cached

        data = await self._post("/ip/check", {"ip": ip})
        result = IpIntelResult(
            ip=data.get("ip") or ip,
            is_proxy=bool(data.get("is_proxy")),
            is_tor=bool(data.get("is_tor")),
            is_datacenter=bool(data.get("is_datacenter")),
            abuse_confidence=int(data.get("abuse_confidence") or 0),
            country=data.get("country"),
        )
        self._ip_cache.set(ip, result)
        return result

    async def aggregate_intelligence(self, indicator: str) -> AggregatedIntelligence:
        """Ask every configured feed about ``indicator`` and compute consensus.

        A feed that fails is recorded with ``verdict=None`` and left out of the
        consensus. With no responding feed the consensus is neutral (50).
        """

        async def query(feed: str) -> IntelSourceVerdict:
            path = f"/feeds/{quote(feed, safe='')}/check"
            try:
                data = await self._post(path, {"indicator": indicator})
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("intel_feed_query_failed", feed=feed, error=str(e))
                return IntelSourceVerdict(name=feed, verdict=None, confidence=0.0)
            return IntelSourceVerdict(
                name=data.get("source") or feed,
                verdict=bool(data.get("malicious")),
                confidence=float(data.get("confidence", 0.5)),
            )

        sources = list(await asyncio.gather(*(query(f) for f in self.config.feeds)))
        responded = [s for s in sources if s.verdict is not None]
        if responded:
            malicious = sum(1 for s in responded if s.verdict)
            consensus = malicious / len(responded) * 100
        else:
            consensus = 50.0

        return AggregatedIntelligence(
            indicator=indicator,
            consensus_score=consensus,
            is_malicious=bool(responded) and consensus > CONSENSUS_THRESHOLD,
            sources=sources,
        )

    async def batch_check(self, indicators: Iterable[str]) -> dict[str, bool | None]:
        """Malicious flag per indicator; None where no feed could verify it."""
        unique = list(dict.fromkeys(indicators))

        async def check(indicator: str) -> bool | None:
            try:
                intel = await self.aggregate_intelligence(indicator)
            except Exception as e:
                logger.warning("intel_batch_check_failed", indicator=indicator, error=str(e))
                return None
            return intel.is_malicious if intel.verified else None

        results = await asyncio.gather(*(check(i) for i in unique))
        return dict(zip(unique, results))

    async def get_categories(self, indicator: str) -> list[str]:
        response = await self.client.get(
            f"/categories/{quote(indicator, safe='')}", headers=self._headers
        )
        response.raise_for_status()
        data = response.json()
        return list(data.get("categories") or []) if isinstance(data, dict) else []

    def clear_cache(self) -> None:
        self._url_cache.clear()
        self._domain_cache.clear()
        self._ip_cache.clear()

    async def aclose(self) -> None:
        await self.client.aclose()


class FallbackIntelService:
    """Circuit-protected intel lookups that never raise.

    Every result is a :class:`FallbackResult`. When the service is unavailable
    the data is the neutral default and ``degraded`` is set.
    """

    def __init__(
        self,
        service: ThreatIntelService,
        breaker: CircuitBreaker,
        *,
        timeout: float | None = None,
    ) -> None:
        self.service = service
        self.breaker = breaker
        self.timeout = timeout if timeout is not None else service.config.timeout_seconds

    async def check_url(self, url: str) -> FallbackResult[UrlIntelResult]:
        return await execute_with_fallback(
            self.breaker,
            INTEL_SERVICE_DEPENDENCY,
            lambda: self.service.check_url(url),
            lambda: default_url_check_result(url),
            timeout=self.timeout,
        )

    async def check_domain(self, domain: str) -> FallbackResult[DomainIntelResult]:
        return await execute_with_fallback(
            self.breaker,
            INTEL_SERVICE_DEPENDENCY,
            lambda: self.service.check_domain(domain),
            lambda: default_domain_check_result(domain),
            timeout=self.timeout,
        )

    async def check_ip(self, ip: str) -> FallbackResult[IpIntelResult]:
        return await execute_with_fallback(
            self.breaker,
            INTEL_SERVICE_DEPENDENCY,
            lambda: self.service.check_ip(ip),
            lambda: default_ip_check_result(ip),
            timeout=self.timeout,
        )
