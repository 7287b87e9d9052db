"""Sending-IP reputation via DNS blocklists, known bad ranges and GeoIP.

A DNSBL is queried by reversing the IPv4 octets under the list's zone
(``4.3.2.1.zen.spamhaus.org``). An A record in ``127.0.0.0/24`` means the IP
is listed and the returned address encodes the listing category. Resolution
failures mean "not listed".
"""

from __future__ import annotations

import asyncio
import ipaddress
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

import dns.asyncresolver
import dns.exception
import dns.resolver
import httpx
import structlog

from mw_core.config import IpReputationConfig
from mw_core.intel.cache import ThreatIntelCache
from mw_core.intel.indicators import is_private_ip, is_valid_ipv4
from mw_core.intel.models import IpCheckResult, IpSource, Verdict

logger = structlog.get_logger()

Resolver = Callable[[str], Awaitable[list[str]]]


@dataclass(frozen=True)
class DnsblSource:
    name: str
    zone: str
    categories: dict[str, str] = field(default_factory=dict)


DNSBL_SOURCES: tuple[DnsblSource, ...] = (
    DnsblSource(
        name="Spamhaus",
        zone="zen.spamhaus.org",
        categories={
            "127.0.0.2": "SBL (Spamhaus Block List)",
            "127.0.0.3": "CSS (Spamhaus CSS)",
            "127.0.0.4": "XBL (Exploits Block List)",
            "127.0.0.9": "SBL (Spamhaus DROP)",
            "127.0.0.10": "PBL (Policy Block List)",
            "127.0.0.11": "PBL (Policy Block List)",
        },
    ),
    DnsblSource(
        name="Barracuda",
        zone="b.barracudacentral.org",
        categories={"127.0.0.2": "Listed in Barracuda"},
    ),
    DnsblSource(
        name="SORBS",
        zone="dnsbl.sorbs.net",
        categories={
            "127.0.0.2": "HTTP Proxy",
            "127.0.0.3": "SOCKS Proxy",
            "127.0.0.4": "Misc Proxy",
            "127.0.0.5": "SMTP Server",
            "127.0.0.6": "Spam Source",
            "127.0.0.7": "Web Server",
            "127.0.0.8": "Block Zone",
            "127.0.0.9": "Zombie/Hijacked",
            "127.0.0.10": "Dynamic IP",
            "127.0.0.11": "Bad Config",
            "127.0.0.12": "No Mail Server",
        },
    ),
    DnsblSource(
        name="SpamCop",
        zone="bl.spamcop.net",
        categories={"127.0.0.2": "Listed in SpamCop"},
    ),
    DnsblSource(
        name="UCEPROTECT",
        zone="dnsbl-1.uceprotect.net",
        categories={"127.0.0.2": "Listed in UCEPROTECT Level 1"},
    ),
)

KNOWN_BAD_RANGES: tuple[tuple[ipaddress.IPv4Network, str], ...] = (
    (ipaddress.IPv4Network("185.220.100.0/22"), "Tor Exit Nodes"),
    (ipaddress.IPv4Network("45.155.204.0/22"), "Known Bulletproof Hosting"),
)

# Sanctioned or high-fraud origins; suspicious on their own, never malicious.
HIGH_RISK_COUNTRIES = frozenset({"RU", "CN", "KP", "IR", "NG", "RO", "UA"})

KNOWN_BAD_LIST = "Known Bad Ranges"
GEOIP_LIST = "GeoIP Risk"

_LISTED_NETWORK = ipaddress.IPv4Network("127.0.0.0/24")


def reverse_ip(ip: str) -> str:
    return ".".join(reversed(ip.split(".")))


def known_bad_range(ip: str) -> str | None:
    """Category of the known bad range containing ``ip``, if any."""
    addr = ipaddress.IPv4Address(ip)
    for network, category in KNOWN_BAD_RANGES:
        if addr in network:
            return category
    return None


async def resolve_a_records(hostname: str) -> list[str]:
    """Resolve A records with dnspython. NXDOMAIN and empty answers mean no records."""
    try:
        answer = await dns.asyncresolver.resolve(hostname, "A")
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
        return []
    return [rdata.address for rdata in answer]


@dataclass(frozen=True)
class GeoLocation:
    country_code: str | None = None
    country: str | None = None


class IpBlocklistChecker:
    """Checks IPv4 addresses against DNSBLs, bad ranges and origin country."""

    def __init__(
        self,
        config: IpReputationConfig | None = None,
        *,
        cache: ThreatIntelCache | None = None,
        resolver: Resolver = resolve_a_records,
        client: httpx.AsyncClient | None = None,
        sources: tuple[DnsblSource, ...] = DNSBL_SOURCES,
    ) -> None:
        """Initialize the checker.

        Args:
            config: Lookup timeouts, batch size and GeoIP endpoint.
            cache: Shared reputation cache; the IP cache holds results for 2h.
            resolver: Async A-record resolver, injectable for tests.
            client: HTTP client used for GeoIP lookups.
            sources: DNSBL zones to query.
        """
        self.config = config or IpReputationConfig()
        self.cache = cache or ThreatIntelCache()
        self._resolver = resolver
        self._client = client
        self.sources = sources

    async def check_ip_reputation(self, ip: str) -> IpCheckResult:
        """Check one IP. Invalid input yields ``unknown``, private IPs ``clean``."""
        ip = ip.strip()
        if not is_valid_ipv4(ip):
            return IpCheckResult(
                ip=ip,
                is_threat=False,
                verdict=Verdict.UNKNOWN,
                sources=[IpSource(list_name="validation", description="Invalid IP format")],
            )

        cached = self.cache.get_ip_result(ip)
        if cached is not None:
            return cached

        if is_private_ip(ip):
            return IpCheckResult(
                ip=ip,
                is_threat=False,
                verdict=Verdict.CLEAN,
                sources=[IpSource(list_name="internal", description="Private IP address")],
            )

        sources: list[IpSource] = []
        if self.config.enable_dnsbl:
            listings = await asyncio.gather(*(self._query_dnsbl(ip, s) for s in self.sources))
            sources.extend(listing for listing in listings if listing is not None)

        bad_range = known_bad_range(ip)
        if bad_range:
            sources.append(
                IpSource(
                    list_name=KNOWN_BAD_LIST,
                    category=bad_range,
                    description=f"IP in known malicious range: {bad_range}",
                )
            )

        is_threat = bool(sources)
        geo = await self._geolocate(ip)
        if geo.country_code in HIGH_RISK_COUNTRIES:
            origin = geo.country or geo.country_code
            sources.append(
                IpSource(
                    list_name=GEOIP_LIST,
                    category="high_risk_country",
                    description=f"Origin: {origin} (elevated threat region)",
                )
            )

        if is_threat:
            verdict = Verdict.MALICIOUS
        elif sources:
            verdict = Verdict.SUSPICIOUS
        else:
            verdict = Verdict.CLEAN

        result = IpCheckResult(
            ip=ip,
            is_threat=is_threat,
            verdict=verdict,
            sources=sources,
            country_code=geo.country_code,
        )
        self.cache.set_ip_result(ip, result)
        return result

    async def check_multiple_ips(self, ips: Iterable[str]) -> dict[str, IpCheckResult]:
        """Check distinct valid IPs in batches to avoid flooding DNS servers."""
        unique = [ip for ip in dict.fromkeys(i.strip() for i in ips) if is_valid_ipv4(ip)]
        results: dict[str, IpCheckResult] = {}
        batch_size = self.config.batch_size
        for start in range(0, len(unique), batch_size):
            batch = unique[start : start + batch_size]
            for result in await asyncio.gather(*(self.check_ip_reputation(ip) for ip in batch)):
                results[result.ip] = result
        return results

    def clear_cache(self) -> None:
        self.cache.ips.clear()

    async def _query_dnsbl(self, ip: str, source: DnsblSource) -> IpSource | None:
        query = f"{reverse_ip(ip)}.{source.zone}"
        try:
            addresses = await asyncio.wait_for(
                self._resolver(query), timeout=self.config.dnsbl_timeout_seconds
            )
        except (TimeoutError, OSError, dns.exception.DNSException) as e:
            logger.debug("dnsbl_lookup_failed", zone=source.zone, error=str(e) or type(e).__name__)
            return None

        # 127.255.255.x are DNSBL error codes (e.g. refused public resolver), not listings.
        listed = [
            a
            for a in addresses
            if is_valid_ipv4(a) and ipaddress.IPv4Address(a) in _LISTED_NETWORK
        ]
        if not listed:
            return None
        return IpSource(
            list_name=source.name,
            category=source.categories.get(listed[0], "Listed"),
            description=f"Listed in {source.name}",
        )

    async def _geolocate(self, ip: str) -> GeoLocation:
        url = self.config.geoip_api_url
        if not url:
            return GeoLocation()

        headers = {}
        if self.config.geoip_api_key:
            headers["Authorization"] = f"Bearer {self.config.geoip_api_key}"
        try:
            if self._client is not None:
                response = await self._client.get(url, params={"ip": ip}, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.config.dnsbl_timeout_seconds) as client:
                    response = await client.get(url, params={"ip": ip}, headers=headers)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("geoip_lookup_failed", ip=ip, error=str(e))
            return GeoLocation()

        if not isinstance(data, dict):
            return GeoLocation()
        code = data.get("countryCode") or data.get("country_code")
        return GeoLocation(
            country_code=str(code).upper() if code else None,
            country=data.get("country"),
        )
