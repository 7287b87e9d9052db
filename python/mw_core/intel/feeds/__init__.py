"""Downloadable reputation feeds and their local URL heuristics."""

from mw_core.intel.feeds.base import HeuristicMatch, ThreatFeed
from mw_core.intel.feeds.openphish import OpenPhishFeed, check_openphish_patterns
from mw_core.intel.feeds.phishtank import (
    PhishTankFeed,
    check_phishtank_patterns,
    find_homoglyph_target,
)
from mw_core.intel.feeds.urlhaus import URLhausFeed, check_urlhaus_patterns

__all__ = [
    "ThreatFeed",
    "HeuristicMatch",
    # Feeds
    "PhishTankFeed",
    "URLhausFeed",
    "OpenPhishFeed",
    # Heuristics
    "check_phishtank_patterns",
    "check_urlhaus_patterns",
    "check_openphish_patterns",
    "find_homoglyph_target",
]
