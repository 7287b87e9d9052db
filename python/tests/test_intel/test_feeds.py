"""Tests for the reputation feed parsers and URL heuristics."""

import json

import httpx
import pytest

from mw_core.config import FeedConfig
from mw_core.errors import FeedFetchError
from mw_core.intel.feeds.openphish import OpenPhishFeed, check_openphish_patterns
from mw_core.intel.feeds.phishtank import (
    PhishTankFeed,
    check_phishtank_patterns,
    find_homoglyph_target,
)
from mw_core.intel.feeds.urlhaus import URLhausFeed, check_urlhaus_patterns


def client_for(body: str | bytes, status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestPhishTankFeed:
    @pytest.mark.asyncio
    async def test_no_api_key_returns_empty(self):
        feed = PhishTankFeed(FeedConfig(), client_for("[]"))
        assert await feed.fetch() == []

    @pytest.mark.asyncio
    async def test_parses_verified_online_entries(self):
        payload = [
            {
                "url": "https://Paypa1-Login.example/Signin/",
                "verified": "yes",
                "online": "yes",
                "target": "PayPal",
                "submission_time": "2025-05-01T10:00:00+00:00",
            },
            {"url": "https://offline.example/", "verified": "yes", "online": "no"},
            {"url": "https://unverified.example/", "verified": "no", "online": "yes"},
            {"verified": "yes", "online": "yes"},
        ]
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, json=payload)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        feed = PhishTankFeed(FeedConfig(phishtank_api_key="k3y"), client)

        entries = await feed.fetch()

        assert "k3y" in requested[0]
        assert len(entries) == 1
        entry = entries[0]
        assert entry.url == "https://paypa1-login.example/signin"
        assert entry.domain == "paypa1-login.example"
        assert entry.verified is True
        assert entry.tags == ("PayPal",)
        assert entry.reported_at is not None

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        feed = PhishTankFeed(FeedConfig(phishtank_api_key="k"), client_for("<html>"))
        with pytest.raises(FeedFetchError, match="invalid JSON"):
            await feed.fetch()

    def test_brand_hyphen_pattern(self):
        match = check_phishtank_patterns("https://secure-update.example/bank/login")
        assert match.is_threat is True
        assert match.category == "phishing"
        assert match.confidence == 0.6
        assert any(i.startswith("pattern:") for i in match.indicators)

    def test_homoglyph_target(self):
        assert find_homoglyph_target("paypa1.example") == "paypal"
        assert find_homoglyph_target("paypal.com") is None
        assert find_homoglyph_target("www.paypal.com") is None
        assert find_homoglyph_target("weather.example") is None

    def test_homoglyph_is_brand_impersonation(self):
        match = check_phishtank_patterns("https://g00gle.example/")
        assert match.is_threat is True
        assert match.category == "brand_impersonation"
        assert "homoglyph:google" in match.indicators

    def test_benign_url(self):
        match = check_phishtank_patterns("https://docs.python.org/3/")
        assert match.is_threat is False


class TestURLhausFeed:
    @pytest.mark.asyncio
    async def test_parses_urls_layout(self):
        payload = {
            "query_status": "ok",
            "urls": [
                {
                    "url": "http://malware.example/payload.exe",
                    "url_status": "online",
                    "threat": "malware_download",
                    "date_added": "2025-05-01 10:00:00 UTC",
                    "tags": ["emotet", "exe"],
                },
                {"url": "http://gone.example/x", "url_status": "offline"},
                {"url": ""},
            ],
        }
        feed = URLhausFeed(FeedConfig(), client_for(json.dumps(payload)))

        entries = await feed.fetch()

        assert [e.url for e in entries] == ["http://malware.example/payload.exe"]
        assert entries[0].tags == ("emotet", "exe")
        assert entries[0].reported_at is not None
        assert entries[0].verified is None

    @pytest.mark.asyncio
    async def test_parses_id_keyed_layout(self):
        payload = {
            "123": [{"url": "http://a.example/x", "threat": "malware_download", "tags": "a,b"}],
            "456": [{"url": "http://b.example/y"}],
        }
        feed = URLhausFeed(FeedConfig(), client_for(json.dumps(payload)))

        entries = await feed.fetch()

        assert {e.domain for e in entries} == {"a.example", "b.example"}
        assert entries[0].tags == ("a", "b")

    @pytest.mark.asyncio
    async def test_bad_query_status_raises(self):
        payload = {"query_status": "no_results", "urls": []}
        feed = URLhausFeed(FeedConfig(), client_for(json.dumps(payload)))
        with pytest.raises(FeedFetchError):
            await feed.fetch()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        feed = URLhausFeed(FeedConfig(), client_for("oops", status_code=503))
        with pytest.raises(FeedFetchError, match="HTTP 503"):
            await feed.fetch()

    @pytest.mark.asyncio
    async def test_oversized_feed_rejected(self):
        config = FeedConfig(max_feed_size_bytes=10)
        feed = URLhausFeed(config, client_for("x" * 100))
        with pytest.raises(FeedFetchError, match="too large"):
            await feed.fetch()

    def test_executable_pattern(self):
        match = check_urlhaus_patterns("http://files.example/invoice.exe")
        assert match.is_threat is True
        assert match.category == "executable_download"

    def test_c2_path_pattern(self):
        match = check_urlhaus_patterns("http://c2.example/gate.php")
        assert "c2_gate" in match.indicators

    def test_benign(self):
        assert check_urlhaus_patterns("https://example.com/about").is_threat is False


class TestOpenPhishFeed:
    @pytest.mark.asyncio
    async def test_parses_lines(self):
        body = "https://a.example/login\n\n# comment\nnot-a-url\nhttp://b.example/\n"
        feed = OpenPhishFeed(FeedConfig(), client_for(body))

        entries = await feed.fetch()

        assert [e.url for e in entries] == ["https://a.example/login", "http://b.example"]
        assert all(e.category == "phishing" for e in entries)

    @pytest.mark.asyncio
    async def test_empty_feed_raises(self):
        feed = OpenPhishFeed(FeedConfig(), client_for("\n"))
        with pytest.raises(FeedFetchError, match="no URLs"):
            await feed.fetch()

    def test_dangerous_protocol(self):
        match = check_openphish_patterns("javascript:alert(1)")
        assert match.is_threat is True
        assert match.confidence == 0.95

    def test_brand_impersonation_alone_is_threat(self):
        match = check_openphish_patterns("https://paypal.account-check.example/")
        assert match.is_threat is True
        assert "brand_impersonation:paypal" in match.indicators

    def test_real_brand_domain_is_not_impersonation(self):
        match = check_openphish_patterns("https://www.paypal.com/signin")
        assert not any(i.startswith("brand_impersonation") for i in match.indicators)

    def test_two_weak_traits(self):
        match = check_openphish_patterns("https://cheap.tk/login")
        assert set(match.indicators) == {"suspicious_tld", "credential_harvesting_path"}
        assert match.is_threat is True
        assert match.confidence == 0.6

    def test_single_weak_trait_is_not_threat(self):
        match = check_openphish_patterns("https://example.xyz/")
        assert match.is_threat is False
        assert match.confidence == 0.4
