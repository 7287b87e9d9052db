"""Microsoft Graph (Office 365) adapter.

Quarantine is a mail folder created on demand; release moves the message
back to ``inbox`` and delete moves it to ``deleteditems``. Graph gives a
message a new ID whenever it changes folder, so :meth:`move_or_label` returns
the ID from the move response.
"""

from __future__ import annotations

from datetime import datetime

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

GRAPH_API_URL = "https://graph.microsoft.com/v1.0"

WELL_KNOWN_FOLDERS = {
    MailboxTarget.INBOX: "inbox",
    MailboxTarget.TRASH: "deleteditems",
}

RATE_LIMIT_CODES = frozenset({"ApplicationThrottled", "TooManyRequests", "MailboxConcurrency"})
TRANSIENT_CODES = frozenset(
    {"ServiceNotAvailable", "ErrorServerBusy", "ErrorTimeoutExpired", "UnknownError"}
)
AUTH_CODES = frozenset(
    {"InvalidAuthenticationToken", "ErrorAccessDenied", "Authorization_RequestDenied"}
)

MESSAGE_FIELDS = (
    "id,conversationId,internetMessageId,subject,from,toRecipients,ccRecipients,"
    "receivedDateTime,body,parentFolderId,internetMessageHeaders,hasAttachments"
)


# =============================================================================
# DTOs
# =============================================================================


class _GraphModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class GraphEmailAddress(_GraphModel):
    name: str | None = None
    address: str = ""


class GraphRecipient(_GraphModel):
    email_address: GraphEmailAddress = Field(
        default_factory=GraphEmailAddress, alias="emailAddress"
    )


class GraphItemBody(_GraphModel):
    content_type: str = Field(default="text", alias="contentType")
    content: str = ""


class GraphHeader(_GraphModel):
    name: str
    value: str = ""


class GraphAttachment(_GraphModel):
    id: str | None = None
    name: str = ""
    content_type: str | None = Field(default=None, alias="contentType")
    size: int = 0


class GraphMessage(_GraphModel):
    """``GET /me/messages/{id}`` response."""

    id: str
    conversation_id: str | None = Field(default=None, alias="conversationId")
    internet_message_id: str | None = Field(default=None, alias="internetMessageId")
    subject: str | None = None
    sender: GraphRecipient | None = Field(default=None, alias="from")
    to_recipients: list[GraphRecipient] = Field(default_factory=list, alias="toRecipients")
    cc_recipients: list[GraphRecipient] = Field(default_factory=list, alias="ccRecipients")
    received_date_time: datetime | None = Field(default=None, alias="receivedDateTime")
    body: GraphItemBody | None = None
    parent_folder_id: str | None = Field(default=None, alias="parentFolderId")
    internet_message_headers: list[GraphHeader] = Field(
        default_factory=list, alias="internetMessageHeaders"
    )
    attachments: list[GraphAttachment] = Field(default_factory=list)


class GraphMailFolder(_GraphModel):
    id: str
    display_name: str = Field(default="", alias="displayName")


# =============================================================================
# Mapping
# =============================================================================


def parse_graph_message(message: GraphMessage) -> ParsedEmail:
    """Map a Graph message into the shared :class:`ParsedEmail`."""
    headers: dict[str, str] = {}
    for header in message.internet_message_headers:
        headers.setdefault(header.name, header.value)

    body_text: str | None = None
    body_html: str | None = None
    if message.body is not None:
        if message.body.content_type.lower() == "html":
            body_html = message.body.content
        else:
            body_text = message.body.content

    sender = message.sender.email_address if message.sender else GraphEmailAddress()
    return ParsedEmail(
        provider_message_id=message.id,
        provider=IntegrationType.O365,
        internet_message_id=message.internet_message_id,
        subject=message.subject or "",
        sender=sender.address,
        sender_name=sender.name,
        recipients=[r.email_address.address for r in message.to_recipients],
        cc=[r.email_address.address for r in message.cc_recipients],
        received_at=message.received_date_time,
        headers=headers,
        body_text=body_text,
        body_html=body_html,
        attachments=[
            Attachment(
                filename=a.name,
                content_type=a.content_type or "application/octet-stream",
                size_bytes=a.size,
                attachment_id=a.id,
            )
            for a in message.attachments
        ],
        labels=[message.parent_folder_id] if message.parent_folder_id else [],
        thread_id=message.conversation_id,
    )


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# =============================================================================
# Error classification
# =============================================================================


def classify_graph_error(response: httpx.Response, operation: str = "request") -> ProviderError:
    """Map a Graph error response onto the provider error taxonomy."""
    error = error_payload(response)
    code = error.get("code")
    message = f"Graph {operation} failed ({response.status_code}): {error.get('message', '')}"
    retry_after = parse_retry_after(response.headers.get("Retry-After"))

    status = response.status_code
    if status == 429 or code in RATE_LIMIT_CODES:
        error_class: type[ProviderError] = RateLimitError
    elif status in (401, 403) or code in AUTH_CODES:
        error_class = AuthenticationError
    elif status >= 500 or code in TRANSIENT_CODES:
        error_class = TransientProviderError
    else:
        error_class = ProviderError
    return error_class(
        message,
        provider=IntegrationType.O365.value,
        status_code=status,
        retry_after=retry_after,
        reason=code,
    )


def graph_is_retryable(error: BaseException) -> bool:
    if isinstance(error, (RateLimitError, TransientProviderError)):
        return True
    if isinstance(error, ProviderError):
        return False
    return is_retryable_error(error)


# =============================================================================
# Adapter
# =============================================================================


class O365Provider(MailboxProvider):
    """Graph mailbox operations for the signed-in user's mailbox."""

    provider = IntegrationType.O365
    base_url = GRAPH_API_URL

    _quarantine_folder_id: str | None = None

    def error_from_response(self, response: httpx.Response, operation: str) -> ProviderError:
        return classify_graph_error(response, operation)

    def is_retryable(self, error: BaseException) -> bool:
        return graph_is_retryable(error)

    async def list_messages(
        self,
        *,
        query: str | None = None,
        max_results: int = 50,
        page_token: str | None = None,
    ) -> MessagePage:
        """List inbox messages. ``page_token`` is the previous page's nextLink."""
        if page_token:
            data = await self._json("GET", page_token, operation="list_messages")
        else:
            params: dict[str, str | int] = {
                "$top": max_results,
                "$select": "id,conversationId",
                "$orderby": "receivedDateTime desc",
            }
            if query:
                params["$filter"] = query
            data = await self._json(
                "GET",
                "/me/mailFolders/inbox/messages",
                operation="list_messages",
                params=params,
            )
        return MessagePage(
            messages=[
                MessageRef(id=m["id"], thread_id=m.get("conversationId"))
                for m in data.get("value") or []
                if isinstance(m, dict) and m.get("id")
            ],
            next_page_token=data.get("@odata.nextLink"),
        )

    async def get_message(self, message_id: str) -> ParsedEmail:
        data = await self._json(
            "GET",
            f"/me/messages/{message_id}",
            operation="get_message",
            params={
                "$select": MESSAGE_FIELDS,
                "$expand": "attachments($select=id,name,contentType,size)",
            },
        )
        return parse_graph_message(GraphMessage.model_validate(data))

    async def move_or_label(self, message_id: str, target: MailboxTarget) -> str:
        if target == MailboxTarget.QUARANTINE:
            destination = await self.ensure_quarantine_target()
        else:
            destination = WELL_KNOWN_FOLDERS[target]

        data = await self._json(
            "POST",
            f"/me/messages/{message_id}/move",
            operation="move",
            json={"destinationId": destination},
        )
        new_id = data.get("id") or message_id
        logger.info(
            "graph_message_moved",
            message_id=message_id,
            new_message_id=new_id,
            target=target.value,
        )
        return new_id

    async def search_by_rfc822_message_id(self, internet_message_id: str) -> str | None:
        value = internet_message_id.strip()
        if not value:
            return None
        if not value.startswith("<"):
            value = f"<{value}>"
        data = await self._json(
            "GET",
            "/me/messages",
            operation="search_message",
            params={
                "$filter": f"internetMessageId eq {_odata_literal(value)}",
                "$select": "id",
                "$top": 1,
            },
        )
        matches = [m for m in data.get("value") or [] if isinstance(m, dict) and m.get("id")]
        return matches[0]["id"] if matches else None

    async def ensure_quarantine_target(self) -> str:
        if self._quarantine_folder_id:
            return self._quarantine_folder_id

        name = self.config.o365_quarantine_folder
        data = await self._json(
            "GET",
            "/me/mailFolders",
            operation="list_folders",
            params={"$filter": f"displayName eq {_odata_literal(name)}"},
        )
        folders = [GraphMailFolder.model_validate(item) for item in data.get("value") or []]
        if folders:
            self._quarantine_folder_id = folders[0].id
            return folders[0].id

        created = await self._json(
            "POST",
            "/me/mailFolders",
            operation="create_folder",
            json={"displayName": name},
        )
        folder = GraphMailFolder.model_validate(created)
        logger.info("graph_quarantine_folder_created", folder_id=folder.id, name=name)
        self._quarantine_folder_id = folder.id
        return folder.id


__all__ = [
    "GRAPH_API_URL",
    "GraphAttachment",
    "GraphMailFolder",
    "GraphMessage",
    "O365Provider",
    "classify_graph_error",
    "graph_is_retryable",
    "parse_graph_message",
]
