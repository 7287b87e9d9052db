"""Tests for feed aggregation and the verdict policy."""

from __future__ import annotations

import asyncio

import pytest

from mw_core.config import FeedConfig
from mw_core.errors import FeedFetchError
from mw_core.intel.aggregator import FeedAggregator, score_sources
from mw_core.intel.cache import ThreatIntelCache
from mw_core.intel.feeds.base import HeuristicMatch, ThreatFeed
from mw_core.intel.models import FeedEntry, MatchType, ThreatSource, Verdict
from mw_core.resilience.circuit_breaker import CircuitBreaker


class FakeFeed(ThreatFeed):
    """Feed returning canned entries, or raising when ``error`` is set."""

    def __init__(
        self,
        name: str,
        entries: list[FeedEntry] | None = None,
        *,
        error: Exception | None = None,
        heuristic: HeuristicMatch | None = None,
    ) -> None:
        super().__init__(FeedConfig())
        self.name = name
        self.entries = entries or []
        self.error = error
        self.heuristic = heuristic
        self.fetch_count = 0

    @property
    def refresh_interval(self) -> float:
        return 3600.0

    async def fetch(self) -> list[FeedEntry]:
        self.fetch_count += 1
        if self.error is not None:
            raise self.error
        return list(self.entries)

    def check_patterns(self, url: str) -> HeuristicMatch | None:
        return self.heuristic


class GatedFeed(FakeFeed):
    """Feed whose download blocks until ``release`` is set."""

    def __init__(self, name: str, entries: list[FeedEntry]) -> None:
        super().__init__(name, entries)
        self.release = asyncio.Event()
        self.started = 0

    async def fetch(self) -> list[FeedEntry]:
        self.started += 1
        await self.release.wait()
        return await super().fetch()


def entry(feed: str, url: str, *, verified: bool | None = None) -> FeedEntry:
    domain = url.split("/")[2]
    return FeedEntry(url=url, domain=domain, feed=feed, category="phishing", verified=verified)


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(clock=clock)


def make_aggregator(feeds, breaker, clock, enable_heuristics: bool = False) -> FeedAggregator:
    return FeedAggregator(
        feeds,
        breaker=breaker,
        cache=ThreatIntelCache(clock=clock),
        enable_heuristics=enable_heuristics,
        clock=clock,
    )


class TestScoreSources:
    def test_no_sources_is_clean_below_certainty(self):
        assert score_sources([]) == (Verdict.CLEAN, 0.6)

    def test_verified_source_is_corroborated(self):
        sources = [ThreatSource(feed="phishtank", match_type=MatchType.EXACT, verified=True)]
        assert score_sources(sources) == (Verdict.MALICIOUS, 0.95)

    def test_two_feeds_corroborate(self):
        sources = [
            ThreatSource(feed="urlhaus", match_type=MatchType.DOMAIN),
            ThreatSource(feed="openphish", match_type=MatchType.DOMAIN),
        ]
        assert score_sources(sources) == (Verdict.MALICIOUS, 0.95)

    def test_single_exact_match(self):
        sources = [ThreatSource(feed="openphish", match_type=MatchType.EXACT)]
        assert score_sources(sources) == (Verdict.MALICIOUS, 0.85)

    def test_domain_only_is_suspicious(self):
        sources = [ThreatSource(feed="openphish", match_type=MatchType.DOMAIN)]
        assert score_sources(sources) == (Verdict.SUSPICIOUS, 0.7)

    def test_heuristics_do_not_count_as_a_second_feed(self):
        sources = [
            ThreatSource(feed="openphish", match_type=MatchType.DOMAIN),
            ThreatSource(feed="heuristics", match_type=MatchType.PATTERN),
        ]
        assert score_sources(sources) == (Verdict.SUSPICIOUS, 0.7)


class TestFeedAggregator:
    @pytest.mark.asyncio
    async def test_exact_match_single_feed(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        result = await aggregator.check_url_reputation("HTTPS://EVIL.example/login/")

        assert result.indicator == "https://evil.example/login"
        assert result.is_threat is True
        assert result.verdict == Verdict.MALICIOUS
        assert result.confidence == 0.85
        assert result.sources[0].match_type == MatchType.EXACT

    @pytest.mark.asyncio
    async def test_listed_in_two_feeds(self, breaker, clock):
        url = "https://evil.example/login"
        feeds = [
            FakeFeed("openphish", [entry("openphish", url)]),
            FakeFeed("urlhaus", [entry("urlhaus", url)]),
        ]
        aggregator = make_aggregator(feeds, breaker, clock)

        result = await aggregator.check_url_reputation(url)

        assert result.verdict == Verdict.MALICIOUS
        assert result.confidence == 0.95
        assert {s.feed for s in result.sources} == {"openphish", "urlhaus"}

    @pytest.mark.asyncio
    async def test_domain_match_is_suspicious(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        result = await aggregator.check_url_reputation("https://evil.example/other")

        assert result.verdict == Verdict.SUSPICIOUS
        assert result.confidence == 0.7
        assert result.sources[0].match_type == MatchType.DOMAIN

    @pytest.mark.asyncio
    async def test_unlisted_url_is_clean(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        result = await aggregator.check_url_reputation("https://fine.example/")

        assert result.verdict == Verdict.CLEAN
        assert result.is_threat is False
        assert result.confidence == 0.6

    @pytest.mark.asyncio
    async def test_heuristic_match_when_unlisted(self, breaker, clock):
        heuristic = HeuristicMatch(
            feed="urlhaus",
            is_threat=True,
            confidence=0.7,
            category="executable_download",
            indicators=["executable_download"],
        )
        feeds = [
            FakeFeed("openphish", [entry("openphish", "https://evil.example/login")]),
            FakeFeed("urlhaus", heuristic=heuristic),
        ]
        aggregator = make_aggregator(feeds, breaker, clock, enable_heuristics=True)

        result = await aggregator.check_url_reputation("https://files.example/a.exe")

        assert result.verdict == Verdict.SUSPICIOUS
        assert result.sources[0].feed == "heuristics"
        assert result.sources[0].match_type == MatchType.PATTERN

    @pytest.mark.asyncio
    async def test_no_feed_data_is_unknown(self, breaker, clock):
        feed = FakeFeed("openphish", error=FeedFetchError("openphish", "down"))
        aggregator = make_aggregator([feed], breaker, clock)

        result = await aggregator.check_url_reputation("https://fine.example/")

        assert result.verdict == Verdict.UNKNOWN
        assert result.verified is False
        assert result.confidence == 0.0

    @pytest.mark.asyncio
    async def test_results_are_cached(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        first = await aggregator.check_url_reputation("https://evil.example/login")
        second = await aggregator.check_url_reputation("https://evil.example/login")

        assert first is second
        assert feed.fetch_count == 1

    @pytest.mark.asyncio
    async def test_domain_reputation_exact_host(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        listed = await aggregator.check_domain_reputation("Evil.Example")
        unlisted = await aggregator.check_domain_reputation("mail.evil.example")

        assert listed.verdict == Verdict.SUSPICIOUS
        assert listed.indicator == "evil.example"
        assert unlisted.verdict == Verdict.CLEAN


class TestFeedRefresh:
    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)
        assert await aggregator.refresh_feed(feed) is True

        feed.error = FeedFetchError("openphish", "down")
        assert await aggregator.refresh_feed(feed) is False

        result = await aggregator.check_url_reputation("https://evil.example/login")
        assert result.verdict == Verdict.MALICIOUS
        assert breaker.get_circuit_status("openphish").failures == 1

    @pytest.mark.asyncio
    async def test_open_circuit_skips_fetch(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)
        for _ in range(3):
            breaker.record_failure("openphish")

        assert await aggregator.refresh_feed(feed) is False
        assert feed.fetch_count == 0

    @pytest.mark.asyncio
    async def test_refresh_all_only_due_feeds(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        assert await aggregator.refresh_all() == {"openphish": True}
        assert await aggregator.refresh_all() == {}

        clock.advance(3600)
        assert await aggregator.refresh_all() == {"openphish": True}
        assert await aggregator.refresh_all(force=True) == {"openphish": True}
        assert feed.fetch_count == 3

    @pytest.mark.asyncio
    async def test_feed_stats(self, breaker, clock):
        feed = FakeFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)
        (before,) = aggregator.get_feed_stats()
        assert before.last_refresh is None

        await aggregator.refresh_all()

        (after,) = aggregator.get_feed_stats()
        assert after.urls == 1
        assert after.domains == 1
        assert after.last_refresh is not None

    def test_with_default_feeds(self, breaker, clock):
        aggregator = FeedAggregator.with_default_feeds(
            FeedConfig(), breaker=breaker, cache=ThreatIntelCache(clock=clock)
        )
        assert [f.name for f in aggregator.feeds] == ["phishtank", "urlhaus", "openphish"]

    @pytest.mark.asyncio
    async def test_caller_timeout_does_not_abort_initial_load(self, breaker, clock):
        feed = GatedFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(
                aggregator.check_url_reputation("https://evil.example/login"), timeout=0.01
            )

        feed.release.set()
        result = await aggregator.check_url_reputation("https://evil.example/login")

        assert result.verdict == Verdict.MALICIOUS
        assert feed.started == 1
        assert breaker.get_circuit_status("openphish").failures == 0

    @pytest.mark.asyncio
    async def test_concurrent_lookups_share_one_load(self, breaker, clock):
        feed = GatedFeed("openphish", [entry("openphish", "https://evil.example/login")])
        aggregator = make_aggregator([feed], breaker, clock)

        lookups = asyncio.gather(
            aggregator.check_url_reputation("https://evil.example/login"),
            aggregator.check_domain_reputation("evil.example"),
        )
        await asyncio.sleep(0)
        feed.release.set()
        url_result, domain_result = await lookups

        assert url_result.verdict == Verdict.MALICIOUS
        assert domain_result.verdict == Verdict.SUSPICIOUS
        assert feed.started == 1
