"""Message-ID shape classification and integrity validation.

Gmail and Microsoft Graph use disjoint ID spaces. A threat record whose
stored provider ID has the other provider's shape was written with the wrong
integration and must not be sent to either API.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from mw_core.errors import DataIntegrityError
from mw_core.mailbox.models import IntegrationType

logger = structlog.get_logger()

GMAIL_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]+$")
GMAIL_ID_MAX_LENGTH = 32

# Graph REST IDs are base64 and start with AAMk for mailbox items
GRAPH_ID_PATTERN = re.compile(r"^AAMk[A-Za-z0-9+/=_-]+$")
O365_MARKERS = ("outlook.com", "namprd", "prod.outlook")


@dataclass(frozen=True)
class GmailId:
    value: str
    format = "gmail"


@dataclass(frozen=True)
class O365Id:
    """An ID that belongs to the Microsoft side.

    ``graph_native`` is False for Exchange-generated RFC-5322 Message-IDs,
    which must be resolved through a search before Graph accepts them.
    """

    value: str
    graph_native: bool = True
    format = "o365"


@dataclass(frozen=True)
class UnknownId:
    value: str
    format = "unknown"


MessageId = GmailId | O365Id | UnknownId


def classify_message_id(message_id: str) -> MessageId:
    """Tag a stored message ID with the provider whose shape it has."""
    value = message_id.strip()
    if GRAPH_ID_PATTERN.match(value):
        return O365Id(value, graph_native=True)
    if GMAIL_ID_PATTERN.match(value) and len(value) <= GMAIL_ID_MAX_LENGTH:
        return GmailId(value)
    if "@" in value and (
        any(marker in value for marker in O365_MARKERS)
        or (value.startswith("<") and value.endswith(">"))
    ):
        return O365Id(value, graph_native=False)
    return UnknownId(value)


def validate_external_message_id(
    external_message_id: str | None,
    integration_type: IntegrationType,
) -> MessageId | None:
    """Check a stored provider ID against the record's integration type.

    Unknown shapes pass. A header-derived fallback ID is never validated, so
    callers only pass the stored ``external_message_id`` here.

    Returns:
        The classified ID, or None when there is no stored ID.

    Raises:
        DataIntegrityError: If the ID has the other provider's shape.
    """
    if not external_message_id:
        return None

    classified = classify_message_id(external_message_id)
    if isinstance(classified, UnknownId) or classified.format == integration_type.value:
        return classified

    logger.error(
        "message_id_integrity_violation",
        detected_format=classified.format,
        integration_type=integration_type.value,
        message_id=external_message_id[:64],
    )
    raise DataIntegrityError(
        f"External message ID format ({classified.format}) does not match integration "
        f"type ({integration_type.value}). Data integrity issue - external_message_id "
        f"should be the {integration_type.value} API message ID.",
        detected_format=classified.format,
        integration_type=integration_type.value,
    )
