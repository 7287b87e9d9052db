"""PhishTank verified-phish feed.

PhishTank closed new API registrations, so without an API key the feed list
stays empty and only the look-alike heuristics below contribute.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

import structlog

from mw_core.errors import FeedFetchError
from mw_core.intel.feeds.base import HeuristicMatch, ThreatFeed
from mw_core.intel.indicators import extract_domain, normalize_url
from mw_core.intel.models import FeedEntry

logger = structlog.get_logger()

KNOWN_PHISHING_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"paypal-.*\.(com|net|org|xyz|tk|ml)",
        r"microsoft-.*\.(com|net|org|xyz|tk|ml)",
        r"apple-.*\.(com|net|org|xyz|tk|ml)",
        r"google-.*\.(com|net|org|xyz|tk|ml)",
        r"amazon-.*\.(com|net|org|xyz|tk|ml)",
        r"netflix-.*\.(com|net|org|xyz|tk|ml)",
        r"facebook-.*\.(com|net|org|xyz|tk|ml)",
        r"bank.*login",
        r"secure.*update",
        r"account.*verify",
        r"signin.*confirm",
    )
)

HOMOGLYPHS: dict[str, frozenset[str]] = {
    "a": frozenset("аąäåàáã4@"),
    "e": frozenset("еęëéè3"),
    "i": frozenset("іıìíï1l!"),
    "o": frozenset("оöóòô0"),
    "c": frozenset("сç"),
    "p": frozenset("р"),
    "x": frozenset("х"),
    "y": frozenset("уý"),
    "n": frozenset("п"),
    "s": frozenset("ѕ$5"),
    "l": frozenset("1I|"),
    "g": frozenset("9q"),
    "t": frozenset("7+"),
    "b": frozenset("8"),
}

PROTECTED_BRANDS: dict[str, str] = {
    "paypal": "paypal.com",
    "microsoft": "microsoft.com",
    "google": "google.com",
    "apple": "apple.com",
    "amazon": "amazon.com",
    "facebook": "facebook.com",
    "netflix": "netflix.com",
    "linkedin": "linkedin.com",
    "dropbox": "dropbox.com",
    "chase": "chase.com",
    "wellsfargo": "wellsfargo.com",
    "bankofamerica": "bankofamerica.com",
}

HOMOGLYPH_SIMILARITY_THRESHOLD = 0.7


def find_homoglyph_target(host: str) -> str | None:
    """Return the brand a host imitates character-by-character, if any."""
    host = host.lower()
    label = host.split(".")[0]
    for brand, brand_domain in PROTECTED_BRANDS.items():
        if host == brand_domain or host.endswith(f".{brand_domain}"):
            continue
        similarity = 0.0
        for brand_char, host_char in zip(brand, label):
            if brand_char == host_char:
                similarity += 1
            elif host_char in HOMOGLYPHS.get(brand_char, frozenset()):
                similarity += 0.9
        if similarity / len(brand) > HOMOGLYPH_SIMILARITY_THRESHOLD:
            return brand
    return None


def check_phishtank_patterns(url: str) -> HeuristicMatch:
    """Brand-hyphen patterns and look-alike domains."""
    lowered = url.lower()
    indicators = [f"pattern:{p.pattern}" for p in KNOWN_PHISHING_PATTERNS if p.search(lowered)]

    host = extract_domain(lowered)
    target = find_homoglyph_target(host) if host else None
    if target:
        indicators.append(f"homoglyph:{target}")

    return HeuristicMatch(
        feed="phishtank",
        is_threat=bool(indicators),
        confidence=0.75 if target else 0.6 if indicators else 0.3,
        category="brand_impersonation" if target else "phishing",
        indicators=indicators,
    )


def _parse_submission_time(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class PhishTankFeed(ThreatFeed):
    name = "phishtank"

    @property
    def refresh_interval(self) -> float:
        return self.config.phishtank_refresh_seconds

    async def fetch(self) -> list[FeedEntry]:
        api_key = self.config.phishtank_api_key
        if not api_key:
            logger.info("phishtank_pattern_only", reason="no_api_key")
            return []

        body = await self._download(self.config.phishtank_url.format(api_key=api_key))
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise FeedFetchError(self.name, "invalid JSON") from exc
        if not isinstance(payload, list):
            raise FeedFetchError(self.name, f"expected a list, got {type(payload).__name__}")

        entries = []
        for record in payload:
            if not isinstance(record, dict) or not isinstance(record.get("url"), str):
                continue
            if record.get("verified") != "yes" or record.get("online") != "yes":
                continue
            url = normalize_url(record["url"])
            target = record.get("target")
            entries.append(
                FeedEntry(
                    url=url,
                    domain=extract_domain(url) or "",
                    feed=self.name,
                    category="phishing",
                    verified=True,
                    reported_at=_parse_submission_time(record.get("submission_time")),
                    tags=(str(target),) if target else (),
                )
            )
        return entries

    def check_patterns(self, url: str) -> HeuristicMatch | None:
        return check_phishtank_patterns(url)
