"""Bounded TTL caches for reputation results.

One cache per indicator type, each with its own TTL and capacity. When a
cache is full the entries closest to expiry are dropped first (a fixed share
of the cache per eviction), which is cheaper than strict LRU and keeps the
entries most likely to still be valid.

All operations are guarded by a ``threading.Lock`` so a single instance can be
shared by every coroutine and worker thread in the process.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from mw_core.config import CacheConfig
from mw_core.intel.indicators import normalize_url
from mw_core.intel.models import IpCheckResult, ThreatCheckResult

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    data: T
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time counters for one cache."""

    name: str
    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    expired: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class TTLCache(Generic[T]):
    """Thread-safe expiring key/value store with expiry-proximity eviction."""

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        *,
        name: str = "cache",
        eviction_fraction: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl_seconds: Default lifetime of an entry.
            max_size: Capacity before eviction kicks in.
            name: Label used in logs and stats.
            eviction_fraction: Share of entries dropped per eviction.
            clock: Monotonic time source, injectable for tests.
        """
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry[T]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> T | None:
        """Return the cached value, or None for a missing or expired key.

        An expired entry is removed as a side effect.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._expired += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.data

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        """Store a value, evicting first if the cache is at capacity."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_locked()
            self._entries[key] = _Entry(data=value, expires_at=self._clock() + ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clean_expired(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            return self._purge_expired_locked()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                name=self.name,
                size=len(self._entries),
                max_size=self.max_size,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expired=self._expired,
            )

    def _purge_expired_locked(self) -> int:
        now = self._clock()
        expired_keys = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired_keys:
            del self._entries[key]
        self._expired += len(expired_keys)
        return len(expired_keys)

    def _evict_locked(self) -> None:
        if self._purge_expired_locked() and len(self._entries) < self.max_size:
            return
        to_remove = max(1, math.ceil(len(self._entries) * self.eviction_fraction))
        oldest = sorted(self._entries.items(), key=lambda item: item[1].expires_at)[:to_remove]
        for key, _ in oldest:
            del self._entries[key]
        self._evictions += len(oldest)
        logger.debug(
            "cache_evicted", cache=self.name, removed=len(oldest), size=len(self._entries)
        )


# =============================================================================
# Reputation Cache
# =============================================================================


@dataclass(frozen=True)
class CleanupCounts:
    urls_removed: int
    domains_removed: int
    ips_removed: int

    @property
    def total(self) -> int:
        return self.urls_removed + self.domains_removed + self.ips_removed


class ThreatIntelCache:
    """URL, domain and IP result caches with per-type TTLs.

    Keys are normalized on the way in so callers can pass raw indicators.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or CacheConfig()
        self.urls: TTLCache[ThreatCheckResult] = TTLCache(
            cfg.url_ttl_seconds,
            cfg.max_urls,
            name="urls",
            eviction_fraction=cfg.eviction_fraction,
            clock=clock,
        )
        self.domains: TTLCache[ThreatCheckResult] = TTLCache(
            cfg.domain_ttl_seconds,
            cfg.max_domains,
            name="domains",
            eviction_fraction=cfg.eviction_fraction,
            clock=clock,
        )
        self.ips: TTLCache[IpCheckResult] = TTLCache(
            cfg.ip_ttl_seconds,
            cfg.max_ips,
            name="ips",
            eviction_fraction=cfg.eviction_fraction,
            clock=clock,
        )

    def get_url_result(self, url: str) -> ThreatCheckResult | None:
        return self.urls.get(normalize_url(url))

    def set_url_result(self, url: str, result: ThreatCheckResult) -> None:
        self.urls.set(normalize_url(url), result)

    def get_domain_result(self, domain: str) -> ThreatCheckResult | None:
        return self.domains.get(domain.lower().strip())

    def set_domain_result(self, domain: str, result: ThreatCheckResult) -> None:
        self.domains.set(domain.lower().strip(), result)

    def get_ip_result(self, ip: str) -> IpCheckResult | None:
        return self.ips.get(ip.strip())

    def set_ip_result(self, ip: str, result: IpCheckResult) -> None:
        self.ips.set(ip.strip(), result)

    def clean_expired(self) -> CleanupCounts:
        """Sweep all three caches; intended for scheduled maintenance."""
        counts = CleanupCounts(
            urls_removed=self.urls.clean_expired(),
            domains_removed=self.domains.clean_expired(),
            ips_removed=self.ips.clean_expired(),
        )
        if counts.total:
            logger.info(
                "threat_cache_swept",
                urls_removed=counts.urls_removed,
                domains_removed=counts.domains_removed,
                ips_removed=counts.ips_removed,
            )
        return counts

    def get_stats(self) -> dict[str, CacheStats]:
        return {
            "urls": self.urls.stats(),
            "domains": self.domains.stats(),
            "ips": self.ips.stats(),
        }

    def clear(self) -> None:
        self.urls.clear()
        self.domains.clear()
        self.ips.clear()
