"""Provider-neutral email model shared by the Gmail and Graph adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from mw_core.intel.indicators import (
    ExtractedURL,
    extract_ips_from_headers,
    extract_urls,
    extract_urls_from_html,
)


class MailboxTarget(str, Enum):
    """Where a move/label operation sends a message."""

    QUARANTINE = "quarantine"
    INBOX = "inbox"
    TRASH = "trash"


class IntegrationType(str, Enum):
    GMAIL = "gmail"
    O365 = "o365"


@dataclass
class Attachment:
    """Attachment metadata.

    Attributes:
        filename: Name of the attached file.
        content_type: MIME type.
        size_bytes: Size in bytes.
        attachment_id: Provider attachment ID, used to fetch content later.
    """

    filename: str
    content_type: str
    size_bytes: int = 0
    attachment_id: str | None = None


@dataclass
class ParsedEmail:
    """A mailbox message mapped out of a provider-specific payload.

    Attributes:
        provider_message_id: Gmail or Graph ID used for mailbox operations.
        internet_message_id: RFC-5322 Message-ID header value.
        subject: Subject line.
        sender: Sender address.
        sender_name: Display name of the sender.
        recipients: To: addresses.
        cc: CC: addresses.
        received_at: Provider receive timestamp.
        headers: Message headers (first value per name).
        body_text: Plain-text body.
        body_html: HTML body.
        attachments: Attachment metadata.
        labels: Gmail label IDs or the Graph parent folder ID.
        thread_id: Gmail thread or Graph conversation ID.
        provider: "gmail" or "o365".
    """

    provider_message_id: str
    provider: IntegrationType
    internet_message_id: str | None = None
    subject: str = ""
    sender: str = ""
    sender_name: str | None = None
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    received_at: datetime | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body_text: str | None = None
    body_html: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    thread_id: str | None = None

    @property
    def sender_domain(self) -> str | None:
        if "@" not in self.sender:
            return None
        domain = self.sender.rsplit("@", 1)[1].strip().strip(">").lower()
        return domain or None

    @property
    def urls(self) -> list[ExtractedURL]:
        """Links from both bodies, HTML anchors first, without duplicates."""
        found: list[ExtractedURL] = []
        seen: set[str] = set()
        extracted = []
        if self.body_html:
            extracted.extend(extract_urls_from_html(self.body_html))
        if self.body_text:
            extracted.extend(extract_urls(self.body_text))
        for url in extracted:
            if url.url not in seen:
                seen.add(url.url)
                found.append(url)
        return found

    @property
    def header_ips(self) -> list[str]:
        return extract_ips_from_headers(self.headers)
