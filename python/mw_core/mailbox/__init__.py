"""Mailbox provider adapters and the provider-neutral email model."""

from mw_core.mailbox.base import (
    AccessTokenFn,
    MailboxProvider,
    MessagePage,
    MessageRef,
    TokenProvider,
)
from mw_core.mailbox.factory import MailboxProviderFactory
from mw_core.mailbox.gmail import GmailProvider, classify_gmail_error, parse_gmail_message
from mw_core.mailbox.models import (
    Attachment,
    IntegrationType,
    MailboxTarget,
    ParsedEmail,
)
from mw_core.mailbox.o365 import O365Provider, classify_graph_error, parse_graph_message

__all__ = [
    # Models
    "Attachment",
    "IntegrationType",
    "MailboxTarget",
    "ParsedEmail",
    # Providers
    "AccessTokenFn",
    "MailboxProvider",
    "MessagePage",
    "MessageRef",
    "TokenProvider",
    "GmailProvider",
    "O365Provider",
    "MailboxProviderFactory",
    # Mapping and classification
    "classify_gmail_error",
    "classify_graph_error",
    "parse_gmail_message",
    "parse_graph_message",
]
