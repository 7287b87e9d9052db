"""Base class for downloadable reputation feeds."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx
import structlog

from mw_core.config import FeedConfig
from mw_core.errors import FeedFetchError
from mw_core.intel.models import FeedEntry

logger = structlog.get_logger()


@dataclass(frozen=True)
class HeuristicMatch:
    """Local pattern check result for a URL no feed has listed yet."""

    feed: str
    is_threat: bool
    confidence: float
    category: str
    indicators: list[str] = field(default_factory=list)


class ThreatFeed(ABC):
    """A feed of known-bad URLs refreshed on its own schedule.

    Subclasses implement :meth:`fetch` (download and parse) and may override
    :meth:`check_patterns` with a heuristic used when the URL is not listed.
    """

    name: str = "feed"

    def __init__(self, config: FeedConfig, client: httpx.AsyncClient | None = None) -> None:
        """Initialize the feed.

        Args:
            config: Feed endpoints and limits.
            client: Shared HTTP client. A short-lived client is created per
                fetch when omitted.
        """
        self.config = config
        self._client = client

    @property
    @abstractmethod
    def refresh_interval(self) -> float:
        """Seconds between refreshes."""

    @abstractmethod
    async def fetch(self) -> list[FeedEntry]:
        """Download the current feed.

        Raises:
            FeedFetchError: If the feed cannot be downloaded or parsed.
        """

    def check_patterns(self, url: str) -> HeuristicMatch | None:
        """Heuristic verdict for ``url``; None when the feed has no heuristic."""
        return None

    async def _download(self, url: str) -> str:
        """GET ``url`` and return the body, enforcing the configured size cap."""
        try:
            if self._client is not None:
                return await self._stream_body(self._client, url)
            async with httpx.AsyncClient(
                timeout=self.config.request_timeout_seconds, follow_redirects=True
            ) as client:
                return await self._stream_body(client, url)
        except FeedFetchError:
            raise
        except httpx.HTTPStatusError as exc:
            raise FeedFetchError(
                self.name, f"HTTP {exc.response.status_code} from feed"
            ) from exc
        except httpx.HTTPError as exc:
            raise FeedFetchError(self.name, f"request failed: {exc}") from exc

    async def _stream_body(self, client: httpx.AsyncClient, url: str) -> str:
        max_size = self.config.max_feed_size_bytes
        headers = {"User-Agent": self.config.user_agent}
        async with client.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            content_length = response.headers.get("content-length")
            if content_length is not None and content_length.isdigit():
                if int(content_length) > max_size:
                    raise FeedFetchError(self.name, f"feed too large ({content_length} bytes)")

            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > max_size:
                    raise FeedFetchError(self.name, f"feed exceeded {max_size} bytes")
                chunks.append(chunk)

        logger.debug("threat_feed_downloaded", feed=self.name, size=total)
        return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
