"""OpenPhish community feed (plain text, one URL per line)."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from mw_core.errors import FeedFetchError
from mw_core.intel.feeds.base import HeuristicMatch, ThreatFeed
from mw_core.intel.indicators import extract_domain, normalize_url
from mw_core.intel.models import FeedEntry

SUSPICIOUS_TLDS = (".tk", ".ml", ".ga", ".cf", ".gq", ".xyz", ".top", ".work", ".click", ".link")

CREDENTIAL_PATHS = ("/login", "/signin", "/verify", "/update", "/secure", "/account", "/password")

IMPERSONATED_BRANDS = (
    "paypal",
    "microsoft",
    "google",
    "apple",
    "amazon",
    "facebook",
    "netflix",
    "bank",
)

LEET_SUBSTITUTIONS = (("o", "0"), ("i", "1"), ("e", "3"), ("a", "4"), ("s", "5"))

_IP_HOST = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


def check_openphish_patterns(url: str) -> HeuristicMatch:
    """Score a URL on generic phishing traits.

    Phishing when two or more traits are present, or on brand impersonation or
    a dangerous scheme alone.
    """
    lowered = url.strip().lower()
    indicators: list[str] = []

    if lowered.startswith(("data:", "javascript:")):
        indicators.append("dangerous_protocol")
        return HeuristicMatch(
            feed="openphish",
            is_threat=True,
            confidence=0.95,
            category="phishing",
            indicators=indicators,
        )

    candidate = lowered if lowered.startswith(("http://", "https://")) else f"https://{lowered}"
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return HeuristicMatch(
            feed="openphish",
            is_threat=False,
            confidence=0.3,
            category="phishing",
            indicators=["invalid_url"],
        )
    host = parts.hostname or ""
    path = parts.path

    if host.endswith(SUSPICIOUS_TLDS):
        indicators.append("suspicious_tld")
    if any(p in path for p in CREDENTIAL_PATHS):
        indicators.append("credential_harvesting_path")

    for brand in IMPERSONATED_BRANDS:
        if brand in host and not (host == f"{brand}.com" or host.endswith(f".{brand}.com")):
            indicators.append(f"brand_impersonation:{brand}")
    for brand in IMPERSONATED_BRANDS:
        for original, replacement in LEET_SUBSTITUTIONS:
            leet = brand.replace(original, replacement)
            if leet != brand and leet in host:
                indicators.append(f"leet_substitution:{brand}")
                break

    if len(host.split(".")) - 2 > 2:
        indicators.append("excessive_subdomains")
    if _IP_HOST.match(host):
        indicators.append("ip_based_url")
    if port is not None and port not in (80, 443):
        indicators.append("unusual_port")
    if "javascript:" in lowered or "data:" in lowered:
        indicators.append("dangerous_protocol")

    impersonation = any(i.startswith("brand_impersonation") for i in indicators)
    dangerous = "dangerous_protocol" in indicators
    is_threat = len(indicators) >= 2 or impersonation or dangerous

    if dangerous:
        confidence = 0.95
    elif impersonation:
        confidence = 0.8
    elif len(indicators) >= 3:
        confidence = 0.75
    elif len(indicators) == 2:
        confidence = 0.6
    elif len(indicators) == 1:
        confidence = 0.4
    else:
        confidence = 0.3

    return HeuristicMatch(
        feed="openphish",
        is_threat=is_threat,
        confidence=confidence,
        category="phishing",
        indicators=indicators,
    )


class OpenPhishFeed(ThreatFeed):
    name = "openphish"

    @property
    def refresh_interval(self) -> float:
        return self.config.openphish_refresh_seconds

    async def fetch(self) -> list[FeedEntry]:
        body = await self._download(self.config.openphish_url)
        entries = []
        for line in body.splitlines():
            line = line.strip()
            if not line.startswith("http"):
                continue
            url = normalize_url(line)
            domain = extract_domain(url) or ""
            entries.append(FeedEntry(url=url, domain=domain, feed=self.name, category="phishing"))
        if not entries:
            raise FeedFetchError(self.name, "feed returned no URLs")
        return entries

    def check_patterns(self, url: str) -> HeuristicMatch | None:
        return check_openphish_patterns(url)
