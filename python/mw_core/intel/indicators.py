"""Indicator normalization and extraction.

URLs, domains and IPs are normalized here before any cache or feed lookup so
that every component keys on the same representation.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from urllib.parse import urlsplit

# Second-level public suffixes treated as a single TLD.
TWO_LEVEL_TLDS = frozenset({"co.uk", "com.au", "co.nz", "co.jp", "com.br", "co.in"})

_DEFAULT_PORTS = {"http": 80, "https": 443}

# URL pattern - handles defanged formats (hxxp, hxxps, [://], [.])
URL_PATTERN = re.compile(
    r"(?P<scheme>hxxps?|https?|ftp)"
    r"(?:\[:\]|:)"
    r"(?://|\[//\])"
    r"(?P<url_body>[a-zA-Z0-9\-._~:/?#\[\]@!$&'()*+,;=%]+)",
    re.IGNORECASE,
)

IPV4_PATTERN = re.compile(
    r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
)


# =============================================================================
# URLs and Domains
# =============================================================================


def defang_to_normal(value: str) -> str:
    """Convert defanged indicators back to normal format.

    Examples:
        hxxp[:]// -> http://
        evil[.]com -> evil.com
    """
    result = re.sub(r"hxxp", "http", value, flags=re.IGNORECASE)
    result = result.replace("[:]", ":").replace("[//]", "//")
    result = result.replace("[.]", ".").replace("[dot]", ".")
    return result


def normalize_url(url: str) -> str:
    """Normalize a URL for set membership and cache keys.

    Lowercases, drops default ports and the fragment, and strips a single
    trailing slash from the path. Unparseable input is lowercased and trimmed.
    """
    cleaned = url.strip().lower()
    fallback = cleaned[:-1] if cleaned.endswith("/") else cleaned
    try:
        parts = urlsplit(cleaned)
        port = parts.port
    except ValueError:
        return fallback
    if not parts.scheme or not parts.hostname:
        return fallback

    host = parts.hostname
    if port is not None and _DEFAULT_PORTS.get(parts.scheme) != port:
        host = f"{host}:{port}"
    path = parts.path[:-1] if parts.path.endswith("/") else parts.path
    query = f"?{parts.query}" if parts.query else ""
    return f"{parts.scheme}://{host}{path}{query}"


def extract_domain(url: str) -> str | None:
    """Return the lowercased hostname of a URL, or None if it has none."""
    candidate = url.strip()
    if not candidate.lower().startswith(("http://", "https://", "ftp://")):
        candidate = f"https://{candidate}"
    try:
        hostname = urlsplit(candidate).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def extract_root_domain(domain: str) -> str:
    """Reduce a hostname (or URL) to its registrable root domain.

    Examples:
        mail.example.com -> example.com
        shop.example.co.uk -> example.co.uk
    """
    clean = domain.lower().strip()
    for prefix in ("http://", "https://"):
        if clean.startswith(prefix):
            clean = clean[len(prefix) :]
    clean = clean.split("/")[0].split("?")[0].split(":")[0].rstrip(".")

    parts = clean.split(".")
    if len(parts) > 2 and ".".join(parts[-2:]) in TWO_LEVEL_TLDS:
        return ".".join(parts[-3:])
    if len(parts) > 2:
        return ".".join(parts[-2:])
    return clean


def get_tld(domain: str) -> str:
    """Return the TLD, treating two-level suffixes such as co.uk as one."""
    parts = domain.lower().split(".")
    if len(parts) >= 2 and ".".join(parts[-2:]) in TWO_LEVEL_TLDS:
        return ".".join(parts[-2:])
    return parts[-1]


# =============================================================================
# IP Addresses
# =============================================================================


def is_valid_ipv4(ip: str) -> bool:
    """Strict dotted-quad check: four 0-255 octets, no leading zeros."""
    parts = ip.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not part.isdigit() or str(int(part)) != part or int(part) > 255:
            return False
    return True


def is_private_ip(ip: str) -> bool:
    """True for private, loopback, link-local and other non-routable addresses."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved


# =============================================================================
# Extraction
# =============================================================================


@dataclass(frozen=True)
class ExtractedURL:
    """A URL found in an email body."""

    url: str
    domain: str | None
    display_text: str | None = None


def extract_urls(text: str) -> list[ExtractedURL]:
    """Extract URLs from plain text, undoing common defanging."""
    if not text:
        return []

    urls: list[ExtractedURL] = []
    seen: set[str] = set()
    for match in URL_PATTERN.finditer(text):
        url = defang_to_normal(match.group(0))
        if url in seen:
            continue
        seen.add(url)
        urls.append(ExtractedURL(url=url, domain=extract_domain(url)))
    return urls


class _LinkCollector(HTMLParser):
    """Collects (href, anchor text) pairs."""

    def __init__(self) -> None:
        super().__init__()
        self.links: list[tuple[str, str]] = []
        self._href: str | None = None
        self._text: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag.lower() != "a":
            return
        for name, value in attrs:
            if name.lower() == "href" and value:
                self._href = value
                self._text = []
                break

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() == "a" and self._href is not None:
            self.links.append((self._href, "".join(self._text).strip()))
            self._href = None

    def handle_data(self, data: str) -> None:
        if self._href is not None:
            self._text.append(data)


def extract_urls_from_html(html: str) -> list[ExtractedURL]:
    """Extract anchor hrefs (with display text) and bare URLs from HTML."""
    if not html:
        return []

    collector = _LinkCollector()
    collector.feed(html)
    collector.close()

    urls: list[ExtractedURL] = []
    seen: set[str] = set()
    for href, text in collector.links:
        url = defang_to_normal(href)
        if not url.lower().startswith(("http://", "https://", "ftp://")):
            continue
        if url in seen:
            continue
        seen.add(url)
        urls.append(ExtractedURL(url=url, domain=extract_domain(url), display_text=text or None))

    for extracted in extract_urls(html):
        if extracted.url not in seen:
            seen.add(extracted.url)
            urls.append(extracted)
    return urls


def extract_ips_from_headers(headers: dict[str, str]) -> list[str]:
    """Collect public IPv4 addresses from relay headers.

    Looks at Received, X-Originating-IP and X-Sender-IP (header names are
    matched case-insensitively). Private addresses and duplicates are dropped;
    first-seen order is kept.
    """
    lowered = {k.lower(): v for k, v in headers.items() if isinstance(v, str)}
    found: list[str] = []

    received = lowered.get("received")
    if received:
        found.extend(IPV4_PATTERN.findall(received))

    originating = lowered.get("x-originating-ip")
    if originating:
        clean = originating.strip().strip("[]")
        if is_valid_ipv4(clean):
            found.append(clean)

    sender_ip = lowered.get("x-sender-ip")
    if sender_ip and is_valid_ipv4(sender_ip.strip()):
        found.append(sender_ip.strip())

    result: list[str] = []
    for ip in found:
        if ip not in result and not is_private_ip(ip):
            result.append(ip)
    return result
