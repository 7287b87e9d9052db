"""Merge reputation feeds into a single URL or domain verdict.

Each feed keeps an in-memory snapshot of its known-bad URLs (plus a domain
index) that is replaced wholesale on refresh. Feeds refresh on their own
schedules through the circuit breaker, and the first lookup triggers a load
if nothing has been fetched yet.

Verdict policy:
- malicious (0.95): any verified source, or two or more distinct feeds
- malicious (0.85): an exact URL match in a single feed
- suspicious (0.7): only domain-level or heuristic matches
- clean (0.6): no match; never 1.0 since feeds are incomplete
- unknown: no feed has ever loaded and nothing matched
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
import structlog

from mw_core.config import FeedConfig
from mw_core.intel.cache import ThreatIntelCache
from mw_core.intel.feeds.base import ThreatFeed
from mw_core.intel.feeds.openphish import OpenPhishFeed
from mw_core.intel.feeds.phishtank import PhishTankFeed
from mw_core.intel.feeds.urlhaus import URLhausFeed
from mw_core.intel.indicators import extract_domain, normalize_url
from mw_core.intel.models import FeedEntry, MatchType, ThreatCheckResult, ThreatSource, Verdict
from mw_core.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()

HEURISTICS_FEED = "heuristics"

CONFIDENCE_CORROBORATED = 0.95
CONFIDENCE_EXACT = 0.85
CONFIDENCE_PARTIAL = 0.7
CONFIDENCE_NO_MATCH = 0.6


def score_sources(sources: Iterable[ThreatSource]) -> tuple[Verdict, float]:
    """Apply the verdict policy to a set of matches.

    Heuristic (pattern) matches never count toward the distinct-feed rule.
    """
    sources = list(sources)
    if not sources:
        return Verdict.CLEAN, CONFIDENCE_NO_MATCH

    distinct_feeds = {s.feed for s in sources if s.match_type != MatchType.PATTERN}
    if any(s.verified for s in sources) or len(distinct_feeds) >= 2:
        return Verdict.MALICIOUS, CONFIDENCE_CORROBORATED
    if any(s.match_type == MatchType.EXACT for s in sources):
        return Verdict.MALICIOUS, CONFIDENCE_EXACT
    return Verdict.SUSPICIOUS, CONFIDENCE_PARTIAL


@dataclass
class FeedSnapshot:
    """Known-bad URLs from one successful fetch."""

    entries: dict[str, FeedEntry] = field(default_factory=dict)
    by_domain: dict[str, FeedEntry] = field(default_factory=dict)
    refreshed_at: float | None = None

    @classmethod
    def build(cls, entries: Iterable[FeedEntry], refreshed_at: float) -> FeedSnapshot:
        snapshot = cls(refreshed_at=refreshed_at)
        for entry in entries:
            snapshot.entries.setdefault(entry.url, entry)
            if entry.domain:
                snapshot.by_domain.setdefault(entry.domain, entry)
        return snapshot


@dataclass(frozen=True)
class FeedStats:
    name: str
    urls: int
    domains: int
    last_refresh: datetime | None
    refresh_interval: float


def _describe(entry: FeedEntry, match_type: MatchType) -> str:
    scope = "URL" if match_type == MatchType.EXACT else "Domain"
    detail = f" ({', '.join(entry.tags)})" if entry.tags else ""
    return f"{scope} listed by {entry.feed} as {entry.category or 'malicious'}{detail}"


class FeedAggregator:
    """Checks URLs and domains against every configured feed."""

    def __init__(
        self,
        feeds: list[ThreatFeed],
        *,
        breaker: CircuitBreaker,
        cache: ThreatIntelCache,
        enable_heuristics: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the aggregator.

        Args:
            feeds: Feeds to aggregate; each name doubles as its circuit name.
            breaker: Circuit registry shared with the rest of the intel layer.
            cache: Result cache for URL and domain verdicts.
            enable_heuristics: Run local pattern checks when no list matches.
            clock: Epoch-seconds time source used for refresh scheduling.
        """
        self.feeds = feeds
        self.breaker = breaker
        self.cache = cache
        self.enable_heuristics = enable_heuristics
        self._clock = clock
        self._snapshots: dict[str, FeedSnapshot] = {f.name: FeedSnapshot() for f in feeds}
        self._refresh_task: asyncio.Task[dict[str, bool]] | None = None

    @classmethod
    def with_default_feeds(
        cls,
        config: FeedConfig,
        *,
        breaker: CircuitBreaker,
        cache: ThreatIntelCache,
        client: httpx.AsyncClient | None = None,
    ) -> FeedAggregator:
        feeds: list[ThreatFeed] = [
            PhishTankFeed(config, client),
            URLhausFeed(config, client),
            OpenPhishFeed(config, client),
        ]
        return cls(
            feeds, breaker=breaker, cache=cache, enable_heuristics=config.enable_heuristics
        )

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    @property
    def has_data(self) -> bool:
        """Whether any feed currently holds at least one known-bad URL."""
        return any(s.entries for s in self._snapshots.values())

    def _is_due(self, feed: ThreatFeed, now: float) -> bool:
        refreshed_at = self._snapshots[feed.name].refreshed_at
        return refreshed_at is None or now - refreshed_at >= feed.refresh_interval

    async def refresh_feed(self, feed: ThreatFeed) -> bool:
        """Fetch one feed and swap in its snapshot.

        Returns:
            True if the snapshot was replaced. On failure the previous snapshot
            is kept and the failure is recorded on the feed's circuit.
        """
        if self.breaker.is_circuit_open(feed.name):
            logger.debug("threat_feed_refresh_skipped", feed=feed.name, reason="circuit_open")
            return False

        start = time.perf_counter()
        try:
            entries = await feed.fetch()
        except Exception as e:
            self.breaker.record_failure(feed.name)
            logger.warning(
                "threat_feed_refresh_failed",
                feed=feed.name,
                error=str(e),
                kept_entries=len(self._snapshots[feed.name].entries),
            )
            return False

        self._snapshots[feed.name] = FeedSnapshot.build(entries, self._clock())
        self.breaker.record_success(feed.name)
        logger.info(
            "threat_feed_refreshed",
            feed=feed.name,
            urls=len(self._snapshots[feed.name].entries),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return True

    async def refresh_all(self, force: bool = False) -> dict[str, bool]:
        """Refresh every feed that is due (or all of them when ``force``).

        Concurrent callers share one refresh pass. The pass runs in its own
        task and callers wait on it through :func:`asyncio.shield`, so a caller
        that times out or is cancelled leaves the download running.
        """
        task = self._refresh_task
        if task is not None and not task.done():
            results = await asyncio.shield(task)
            if not force:
                return results

        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_due(force))
        return await asyncio.shield(self._refresh_task)

    async def _refresh_due(self, force: bool) -> dict[str, bool]:
        now = self._clock()
        due = [f for f in self.feeds if force or self._is_due(f, now)]
        if not due:
            return {}
        results = await asyncio.gather(*(self.refresh_feed(f) for f in due))
        return {feed.name: ok for feed, ok in zip(due, results)}

    async def ensure_loaded(self) -> None:
        if not self.has_data:
            await self.refresh_all()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def check_url_reputation(self, url: str) -> ThreatCheckResult:
        """Check a URL against every feed, falling back to heuristics."""
        normalized = normalize_url(url)
        cached = self.cache.get_url_result(normalized)
        if cached is not None:
            return cached

        await self.ensure_loaded()

        sources: list[ThreatSource] = []
        for feed in self.feeds:
            entry = self._snapshots[feed.name].entries.get(normalized)
            if entry is not None:
                sources.append(self._source(entry, MatchType.EXACT))

        domain = extract_domain(normalized)
        if not sources and domain:
            for feed in self.feeds:
                entry = self._snapshots[feed.name].by_domain.get(domain)
                if entry is not None:
                    sources.append(self._source(entry, MatchType.DOMAIN))

        if not sources and self.enable_heuristics:
            sources.extend(self._heuristic_sources(normalized))

        if not sources and not self.has_data:
            logger.warning("threat_feeds_unavailable", indicator=normalized)
            return ThreatCheckResult.unknown(normalized)

        verdict, confidence = score_sources(sources)
        result = ThreatCheckResult(
            indicator=normalized,
            is_threat=bool(sources),
            verdict=verdict,
            confidence=confidence,
            sources=sources,
        )
        self.cache.set_url_result(normalized, result)
        return result

    async def check_domain_reputation(self, domain: str) -> ThreatCheckResult:
        """Check whether any feed lists URLs hosted on ``domain``."""
        normalized = domain.lower().strip()
        cached = self.cache.get_domain_result(normalized)
        if cached is not None:
            return cached

        await self.ensure_loaded()

        sources = []
        for feed in self.feeds:
            entry = self._snapshots[feed.name].by_domain.get(normalized)
            if entry is not None:
                sources.append(self._source(entry, MatchType.DOMAIN))

        if not sources and not self.has_data:
            logger.warning("threat_feeds_unavailable", indicator=normalized)
            return ThreatCheckResult.unknown(normalized)

        verdict, confidence = score_sources(sources)
        result = ThreatCheckResult(
            indicator=normalized,
            is_threat=bool(sources),
            verdict=verdict,
            confidence=confidence,
            sources=sources,
        )
        self.cache.set_domain_result(normalized, result)
        return result

    def get_feed_stats(self) -> list[FeedStats]:
        stats = []
        for feed in self.feeds:
            snapshot = self._snapshots[feed.name]
            stats.append(
                FeedStats(
                    name=feed.name,
                    urls=len(snapshot.entries),
                    domains=len(snapshot.by_domain),
                    last_refresh=(
                        datetime.fromtimestamp(snapshot.refreshed_at, tz=timezone.utc)
                        if snapshot.refreshed_at is not None
                        else None
                    ),
                    refresh_interval=feed.refresh_interval,
                )
            )
        return stats

    @staticmethod
    def _source(entry: FeedEntry, match_type: MatchType) -> ThreatSource:
        return ThreatSource(
            feed=entry.feed,
            match_type=match_type,
            category=entry.category,
            verified=entry.verified,
            reported_at=entry.reported_at,
            description=_describe(entry, match_type),
        )

    def _heuristic_sources(self, url: str) -> list[ThreatSource]:
        sources = []
        for feed in self.feeds:
            match = feed.check_patterns(url)
            if match is None or not match.is_threat:
                continue
            sources.append(
                ThreatSource(
                    feed=HEURISTICS_FEED,
                    match_type=MatchType.PATTERN,
                    category=match.category,
                    description=f"{match.feed} heuristics: {', '.join(match.indicators)}",
                )
            )
        return sources
