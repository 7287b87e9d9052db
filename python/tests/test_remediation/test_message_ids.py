"""Tests for message-ID shape classification."""

import pytest

from mw_core.errors import DataIntegrityError
from mw_core.mailbox.models import IntegrationType
from mw_core.remediation.message_ids import (
    GmailId,
    O365Id,
    UnknownId,
    classify_message_id,
    validate_external_message_id,
)

GRAPH_ID = "AAMkAGI2TG93AAA="


class TestClassifyMessageId:
    def test_gmail_hex_id(self):
        assert classify_message_id("18c2f0a1b2c3d4e5") == GmailId("18c2f0a1b2c3d4e5")

    def test_graph_rest_id(self):
        classified = classify_message_id(GRAPH_ID)
        assert isinstance(classified, O365Id)
        assert classified.graph_native is True

    def test_exchange_message_id_is_o365_but_not_native(self):
        classified = classify_message_id(
            "<BY5PR0101MB1234@BY5PR0101MB1234.namprd01.prod.outlook.com>"
        )
        assert isinstance(classified, O365Id)
        assert classified.graph_native is False

    def test_overlong_alphanumeric_is_unknown(self):
        assert isinstance(classify_message_id("a" * 40), UnknownId)

    def test_free_text_is_unknown(self):
        classified = classify_message_id("not an id")
        assert classified.format == "unknown"


class TestValidateExternalMessageId:
    def test_missing_id(self):
        assert validate_external_message_id(None, IntegrationType.GMAIL) is None
        assert validate_external_message_id("", IntegrationType.O365) is None

    def test_matching_shapes_pass(self):
        assert validate_external_message_id("18c2f0a1b2c3d4e5", IntegrationType.GMAIL)
        assert validate_external_message_id(GRAPH_ID, IntegrationType.O365)

    def test_unknown_shape_passes(self):
        result = validate_external_message_id("id with spaces", IntegrationType.GMAIL)
        assert isinstance(result, UnknownId)

    @pytest.mark.parametrize(
        "external_id,integration_type,detected",
        [
            ("18c2f0a1b2c3d4e5", IntegrationType.O365, "gmail"),
            (GRAPH_ID, IntegrationType.GMAIL, "o365"),
        ],
    )
    def test_cross_provider_id_is_rejected(self, external_id, integration_type, detected):
        with pytest.raises(DataIntegrityError) as exc_info:
            validate_external_message_id(external_id, integration_type)

        assert exc_info.value.detected_format == detected
        assert exc_info.value.integration_type == integration_type.value
        assert "does not match integration type" in str(exc_info.value)
