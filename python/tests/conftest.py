"""Pytest configuration for mw_core tests."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from mw_core.mailbox.models import IntegrationType, ParsedEmail


def pytest_configure(config):
    """Configure custom markers for pytest."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow-running (deselect with '-m \"not slow\"')",
    )


class FakeClock:
    """Manually advanced time source for TTL and circuit tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


def make_email(**overrides) -> ParsedEmail:
    """A Gmail message with one link and one public relay IP."""
    fields = {
        "provider_message_id": "18c2f0a1b2c3d4e5",
        "provider": IntegrationType.GMAIL,
        "internet_message_id": "<abc123@mail.example.net>",
        "subject": "Invoice overdue",
        "sender": "billing@example.net",
        "recipients": ["alice@corp.example"],
        "headers": {"Received": "from mx.example.net ([8.8.4.4]) by mx.corp.example"},
        "body_text": "Please pay at https://example.net/pay",
    }
    fields.update(overrides)
    return ParsedEmail(**fields)


@pytest.fixture
def email_factory():
    return make_email
