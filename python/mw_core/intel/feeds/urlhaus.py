"""URLhaus malware-distribution feed (abuse.ch)."""

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

MALWARE_URL_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), threat)
    for pattern, threat in (
        (r"\.exe(\?|$)", "executable_download"),
        (r"\.scr(\?|$)", "screensaver_executable"),
        (r"\.bat(\?|$)", "batch_script"),
        (r"\.cmd(\?|$)", "command_script"),
        (r"\.ps1(\?|$)", "powershell_script"),
        (r"\.vbs(\?|$)", "vbscript"),
        (r"\.hta(\?|$)", "html_application"),
        (r"\.dll(\?|$)", "dll_download"),
        (r"\.docm(\?|$)", "macro_enabled_doc"),
        (r"\.xlsm(\?|$)", "macro_enabled_excel"),
        (r"\.pptm(\?|$)", "macro_enabled_ppt"),
        (r"/gate\.php", "c2_gate"),
        (r"/panel/", "c2_panel"),
        (r"/loader/", "malware_loader"),
        (r"/bot/", "botnet"),
        (r"/update\.php\?", "suspicious_update"),
        (r"/check\.php\?", "suspicious_check"),
        (r"/data\.php\?", "data_exfil"),
    )
)


def check_urlhaus_patterns(url: str) -> HeuristicMatch:
    """Match a URL against common malware download and C2 path patterns."""
    lowered = url.lower()
    threats = [threat for pattern, threat in MALWARE_URL_PATTERNS if pattern.search(lowered)]
    return HeuristicMatch(
        feed="urlhaus",
        is_threat=bool(threats),
        confidence=0.7 if threats else 0.3,
        category=threats[0] if threats else "malware_download",
        indicators=threats,
    )


def _parse_date(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace(" UTC", "").strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_tags(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(t.strip() for t in value.split(",") if t.strip())
    if isinstance(value, list):
        return tuple(str(t) for t in value if t)
    return ()


def _iter_records(payload: Any) -> list[dict[str, Any]]:
    """Accept both the ``{"urls": [...]}`` and the id-keyed export layouts."""
    if isinstance(payload, dict) and isinstance(payload.get("urls"), list):
        if payload.get("query_status", "ok") != "ok":
            raise FeedFetchError("urlhaus", f"query_status={payload.get('query_status')}")
        return [r for r in payload["urls"] if isinstance(r, dict)]
    if isinstance(payload, dict):
        records: list[dict[str, Any]] = []
        for value in payload.values():
            if isinstance(value, list):
                records.extend(r for r in value if isinstance(r, dict))
        return records
    if isinstance(payload, list):
        return [r for r in payload if isinstance(r, dict)]
    raise FeedFetchError("urlhaus", f"unexpected payload type {type(payload).__name__}")


class URLhausFeed(ThreatFeed):
    name = "urlhaus"

    @property
    def refresh_interval(self) -> float:
        return self.config.urlhaus_refresh_seconds

    async def fetch(self) -> list[FeedEntry]:
        body = await self._download(self.config.urlhaus_url)
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise FeedFetchError(self.name, "invalid JSON") from exc

        entries = []
        skipped = 0
        for record in _iter_records(payload):
            raw_url = record.get("url")
            if not isinstance(raw_url, str) or not raw_url:
                skipped += 1
                continue
            if record.get("url_status", "online") != "online":
                continue
            url = normalize_url(raw_url)
            entries.append(
                FeedEntry(
                    url=url,
                    domain=extract_domain(url) or "",
                    feed=self.name,
                    category=record.get("threat") or "malware_download",
                    reported_at=_parse_date(record.get("date_added") or record.get("dateadded")),
                    tags=_parse_tags(record.get("tags")),
                )
            )
        if skipped:
            logger.debug("urlhaus_records_skipped", count=skipped)
        return entries

    def check_patterns(self, url: str) -> HeuristicMatch | None:
        return check_urlhaus_patterns(url)
