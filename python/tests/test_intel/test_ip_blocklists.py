"""Tests for DNSBL, bad-range and GeoIP checks."""

import asyncio

import httpx
import pytest

from mw_core.config import IpReputationConfig
from mw_core.intel.cache import ThreatIntelCache
from mw_core.intel.ip_blocklists import (
    DnsblSource,
    IpBlocklistChecker,
    known_bad_range,
    reverse_ip,
)
from mw_core.intel.models import Verdict

SPAMHAUS = DnsblSource(
    name="Spamhaus", zone="zen.spamhaus.org", categories={"127.0.0.4": "XBL (Exploits Block List)"}
)
SPAMCOP = DnsblSource(name="SpamCop", zone="bl.spamcop.net")


def resolver_for(answers: dict[str, list[str]], queries: list[str] | None = None):
    async def resolve(hostname: str) -> list[str]:
        if queries is not None:
            queries.append(hostname)
        return answers.get(hostname, [])

    return resolve


def make_checker(resolver, config: IpReputationConfig | None = None, client=None):
    return IpBlocklistChecker(
        config or IpReputationConfig(),
        cache=ThreatIntelCache(),
        resolver=resolver,
        client=client,
        sources=(SPAMHAUS, SPAMCOP),
    )


class TestHelpers:
    def test_reverse_ip(self):
        assert reverse_ip("1.2.3.4") == "4.3.2.1"

    def test_known_bad_range(self):
        assert known_bad_range("185.220.101.7") == "Tor Exit Nodes"
        assert known_bad_range("8.8.8.8") is None


class TestIpBlocklistChecker:
    @pytest.mark.asyncio
    async def test_listed_ip_is_malicious(self):
        queries: list[str] = []
        checker = make_checker(
            resolver_for({"4.4.8.8.zen.spamhaus.org": ["127.0.0.4"]}, queries)
        )

        result = await checker.check_ip_reputation("8.8.4.4")

        assert "4.4.8.8.zen.spamhaus.org" in queries
        assert "4.4.8.8.bl.spamcop.net" in queries
        assert result.is_threat is True
        assert result.verdict == Verdict.MALICIOUS
        assert result.sources[0].list_name == "Spamhaus"
        assert result.sources[0].category == "XBL (Exploits Block List)"

    @pytest.mark.asyncio
    async def test_unlisted_ip_is_clean(self):
        checker = make_checker(resolver_for({}))
        result = await checker.check_ip_reputation("8.8.4.4")
        assert result.verdict == Verdict.CLEAN
        assert result.sources == []

    @pytest.mark.asyncio
    async def test_dnsbl_error_codes_ignored(self):
        checker = make_checker(resolver_for({"4.4.8.8.zen.spamhaus.org": ["127.255.255.254"]}))
        result = await checker.check_ip_reputation("8.8.4.4")
        assert result.verdict == Verdict.CLEAN

    @pytest.mark.asyncio
    async def test_resolver_timeout_means_not_listed(self):
        async def slow(hostname: str) -> list[str]:
            await asyncio.sleep(5)
            return ["127.0.0.2"]

        checker = make_checker(slow, IpReputationConfig(dnsbl_timeout_seconds=0.01))
        result = await checker.check_ip_reputation("8.8.4.4")
        assert result.verdict == Verdict.CLEAN

    @pytest.mark.asyncio
    async def test_known_bad_range_is_malicious(self):
        checker = make_checker(resolver_for({}))
        result = await checker.check_ip_reputation("185.220.101.7")
        assert result.verdict == Verdict.MALICIOUS
        assert result.sources[0].list_name == "Known Bad Ranges"

    @pytest.mark.asyncio
    async def test_private_ip_is_clean_without_lookup(self):
        queries: list[str] = []
        checker = make_checker(resolver_for({}, queries))
        result = await checker.check_ip_reputation("10.1.2.3")
        assert result.verdict == Verdict.CLEAN
        assert result.sources[0].list_name == "internal"
        assert queries == []

    @pytest.mark.asyncio
    async def test_invalid_ip_is_unknown(self):
        checker = make_checker(resolver_for({}))
        result = await checker.check_ip_reputation("999.1.1.1")
        assert result.verdict == Verdict.UNKNOWN
        assert result.sources[0].list_name == "validation"

    @pytest.mark.asyncio
    async def test_high_risk_country_is_suspicious(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["ip"] == "8.8.4.4"
            return httpx.Response(200, json={"countryCode": "kp", "country": "North Korea"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        config = IpReputationConfig(geoip_api_url="https://geo.example/lookup")
        checker = make_checker(resolver_for({}), config, client)

        result = await checker.check_ip_reputation("8.8.4.4")

        assert result.is_threat is False
        assert result.verdict == Verdict.SUSPICIOUS
        assert result.country_code == "KP"
        assert result.sources[0].list_name == "GeoIP Risk"

    @pytest.mark.asyncio
    async def test_geoip_failure_is_ignored(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        config = IpReputationConfig(geoip_api_url="https://geo.example/lookup")
        checker = make_checker(resolver_for({}), config, client)

        result = await checker.check_ip_reputation("8.8.4.4")

        assert result.verdict == Verdict.CLEAN
        assert result.country_code is None

    @pytest.mark.asyncio
    async def test_results_cached(self):
        queries: list[str] = []
        checker = make_checker(resolver_for({}, queries))
        await checker.check_ip_reputation("8.8.4.4")
        await checker.check_ip_reputation("8.8.4.4")
        assert len(queries) == 2

        checker.clear_cache()
        await checker.check_ip_reputation("8.8.4.4")
        assert len(queries) == 4

    @pytest.mark.asyncio
    async def test_check_multiple_ips(self):
        checker = make_checker(
            resolver_for({"4.4.8.8.zen.spamhaus.org": ["127.0.0.2"]}),
            IpReputationConfig(batch_size=1),
        )

        results = await checker.check_multiple_ips(["8.8.4.4", "1.1.1.1", "8.8.4.4", "bogus"])

        assert list(results) == ["8.8.4.4", "1.1.1.1"]
        assert results["8.8.4.4"].verdict == Verdict.MALICIOUS
        assert results["1.1.1.1"].verdict == Verdict.CLEAN
