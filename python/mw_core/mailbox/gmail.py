"""Gmail API adapter.

Quarantine is a user label: the message gets the quarantine label and loses
``INBOX``. Release reverses that (after un-trashing) and delete moves the
message to Trash. Gmail message IDs are short hex strings; messages are also
searchable by their RFC-5322 Message-ID with ``rfc822msgid:``.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from mw_core.errors import (
    AuthenticationError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from mw_core.mailbox.base import (
    MailboxProvider,
    MessagePage,
    MessageRef,
    error_payload,
    parse_retry_after,
)
from mw_core.mailbox.models import Attachment, IntegrationType, MailboxTarget, ParsedEmail
from mw_core.resilience.retry import is_retryable_error

logger = structlog.get_logger()

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1"

INBOX_LABEL = "INBOX"

# errors[].reason values Google uses for throttling, usually with a 403
RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
)
TRANSIENT_REASONS = frozenset({"backendError", "internalError"})


# =============================================================================
# DTOs
# =============================================================================


class _GmailModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class GmailHeader(_GmailModel):
    name: str
    value: str = ""


class GmailBody(_GmailModel):
    size: int = 0
    data: str | None = None
    attachment_id: str | None = Field(default=None, alias="attachmentId")


class GmailMessagePart(_GmailModel):
    part_id: str | None = Field(default=None, alias="partId")
    mime_type: str = Field(default="", alias="mimeType")
    filename: str = ""
    headers: list[GmailHeader] = Field(default_factory=list)
    body: GmailBody = Field(default_factory=GmailBody)
    parts: list[GmailMessagePart] = Field(default_factory=list)


GmailMessagePart.model_rebuild()


class GmailMessage(_GmailModel):
    """``users.messages.get`` response in ``full`` format."""

    id: str
    thread_id: str | None = Field(default=None, alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")
    snippet: str = ""
    internal_date: str | None = Field(default=None, alias="internalDate")
    payload: GmailMessagePart = Field(default_factory=GmailMessagePart)


class GmailLabel(_GmailModel):
    id: str
    name: str
    type: str | None = None


# =============================================================================
# Mapping
# =============================================================================


def decode_body(data: str | None) -> str | None:
    """Decode a base64url body, tolerating missing padding."""
    if not data:
        return None
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def _walk(part: GmailMessagePart) -> list[GmailMessagePart]:
    parts = [part]
    for child in part.parts:
        parts.extend(_walk(child))
    return parts


def parse_gmail_message(message: GmailMessage) -> ParsedEmail:
    """Map a Gmail API message into the shared :class:`ParsedEmail`."""
    headers: dict[str, str] = {}
    for header in message.payload.headers:
        headers.setdefault(header.name, header.value)
    lowered = {k.lower(): v for k, v in headers.items()}

    sender_name, sender = parseaddr(lowered.get("from", ""))
    recipients = [addr for _, addr in getaddresses([lowered.get("to", "")]) if addr]
    cc = [addr for _, addr in getaddresses([lowered.get("cc", "")]) if addr]

    body_text: str | None = None
    body_html: str | None = None
    attachments: list[Attachment] = []
    for part in _walk(message.payload):
        if part.filename:
            attachments.append(
                Attachment(
                    filename=part.filename,
                    content_type=part.mime_type or "application/octet-stream",
                    size_bytes=part.body.size,
                    attachment_id=part.body.attachment_id,
                )
            )
        elif part.mime_type == "text/plain" and body_text is None:
            body_text = decode_body(part.body.data)
        elif part.mime_type == "text/html" and body_html is None:
            body_html = decode_body(part.body.data)

    received_at = None
    if message.internal_date and message.internal_date.isdigit():
        received_at = datetime.fromtimestamp(int(message.internal_date) / 1000, tz=timezone.utc)

    return ParsedEmail(
        provider_message_id=message.id,
        provider=IntegrationType.GMAIL,
        internet_message_id=lowered.get("message-id"),
        subject=lowered.get("subject", ""),
        sender=sender,
        sender_name=sender_name or None,
        recipients=recipients,
        cc=cc,
        received_at=received_at,
        headers=headers,
        body_text=body_text,
        body_html=body_html,
        attachments=attachments,
        labels=list(message.label_ids),
        thread_id=message.thread_id,
    )


# =============================================================================
# Error classification
# =============================================================================


def classify_gmail_error(response: httpx.Response, operation: str = "request") -> ProviderError:
    """Map a Gmail error response onto the provider error taxonomy."""
    error = error_payload(response)
    reasons = {
        e.get("reason") for e in error.get("errors", []) if isinstance(e, dict)
    }
    reason = next((r for r in reasons if r), None) or error.get("status")
    message = f"Gmail {operation} failed ({response.status_code}): {error.get('message', '')}"

    status = response.status_code
    if status == 429 or reasons & RATE_LIMIT_REASONS:
        error_class: type[ProviderError] = RateLimitError
    elif status in (401, 403):
        error_class = AuthenticationError
    elif status >= 500 or reasons & TRANSIENT_REASONS:
        error_class = TransientProviderError
    else:
        error_class = ProviderError
    return error_class(
        message,
        provider=IntegrationType.GMAIL.value,
        status_code=status,
        retry_after=parse_retry_after(response.headers.get("Retry-After")),
        reason=reason,
    )


def gmail_is_retryable(error: BaseException) -> bool:
    if isinstance(error, (RateLimitError, TransientProviderError)):
        return True
    if isinstance(error, ProviderError):
        return False
    return is_retryable_error(error)


# =============================================================================
# Adapter
# =============================================================================


class GmailProvider(MailboxProvider):
    """Gmail mailbox operations for one connected account."""

    provider = IntegrationType.GMAIL
    base_url = GMAIL_API_URL

    _quarantine_label_id: str | None = None

    def error_from_response(self, response: httpx.Response, operation: str) -> ProviderError:
        return classify_gmail_error(response, operation)

    def is_retryable(self, error: BaseException) -> bool:
        return gmail_is_retryable(error)

    async def list_messages(
        self,
        *,
        query: str | None = None,
        max_results: int = 50,
        page_token: str | None = None,
        include_spam_trash: bool = False,
    ) -> MessagePage:
        params: dict[str, str | int] = {"maxResults": max_results}
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token
        if include_spam_trash:
            params["includeSpamTrash"] = "true"
        data = await self._json(
            "GET", "/users/me/messages", operation="list_messages", params=params
        )
        return MessagePage(
            messages=[
                MessageRef(id=m["id"], thread_id=m.get("threadId"))
                for m in data.get("messages") or []
                if isinstance(m, dict) and m.get("id")
            ],
            next_page_token=data.get("nextPageToken"),
        )

    async def get_message(self, message_id: str) -> ParsedEmail:
        data = await self._json(
            "GET",
            f"/users/me/messages/{message_id}",
            operation="get_message",
            params={"format": "full"},
        )
        return parse_gmail_message(GmailMessage.model_validate(data))

    async def move_or_label(self, message_id: str, target: MailboxTarget) -> str:
        if target == MailboxTarget.TRASH:
            await self._request(
                "POST", f"/users/me/messages/{message_id}/trash", operation="trash"
            )
        elif target == MailboxTarget.QUARANTINE:
            label_id = await self.ensure_quarantine_target()
            await self.modify_labels(message_id, add=[label_id], remove=[INBOX_LABEL])
        else:
            label_id = await self.ensure_quarantine_target()
            await self._request(
                "POST", f"/users/me/messages/{message_id}/untrash", operation="untrash"
            )
            await self.modify_labels(message_id, add=[INBOX_LABEL], remove=[label_id])

        logger.info("gmail_message_moved", message_id=message_id, target=target.value)
        return message_id

    async def modify_labels(
        self, message_id: str, *, add: list[str], remove: list[str]
    ) -> None:
        await self._request(
            "POST",
            f"/users/me/messages/{message_id}/modify",
            operation="modify",
            json={"addLabelIds": add, "removeLabelIds": remove},
        )

    async def search_by_rfc822_message_id(self, internet_message_id: str) -> str | None:
        bare = internet_message_id.strip().strip("<>")
        if not bare:
            return None
        # Trashed messages must stay findable so they can be released.
        page = await self.list_messages(
            query=f"rfc822msgid:{bare}", max_results=1, include_spam_trash=True
        )
        return page.messages[0].id if page.messages else None

    async def ensure_quarantine_target(self) -> str:
        if self._quarantine_label_id:
            return self._quarantine_label_id

        name = self.config.gmail_quarantine_label
        data = await self._json("GET", "/users/me/labels", operation="list_labels")
        labels = [GmailLabel.model_validate(item) for item in data.get("labels") or []]
        existing = next((label for label in labels if label.name == name), None)
        if existing is not None:
            self._quarantine_label_id = existing.id
            return existing.id

        created = await self._json(
            "POST",
            "/users/me/labels",
            operation="create_label",
            json={
                "name": name,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            },
        )
        label = GmailLabel.model_validate(created)
        logger.info("gmail_quarantine_label_created", label_id=label.id, name=name)
        self._quarantine_label_id = label.id
        return label.id


__all__ = [
    "GMAIL_API_URL",
    "GmailHeader",
    "GmailLabel",
    "GmailMessage",
    "GmailMessagePart",
    "GmailProvider",
    "classify_gmail_error",
    "decode_body",
    "gmail_is_retryable",
    "parse_gmail_message",
]
