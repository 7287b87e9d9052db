"""
mw_core - threat detection and remediation core for Mailward

Incoming email is screened against several reputation sources, scored, and
high-confidence threats are quarantined directly in the user's mailbox.

Submodules:
    - mw_core.intel: indicator helpers, TTL caches, reputation feeds, WHOIS and
      domain age, IP blocklists, the external intel client and the per-email
      orchestrator
    - mw_core.resilience: circuit breakers, retries and neutral fallbacks
    - mw_core.mailbox: Gmail and Microsoft Graph adapters, ParsedEmail
    - mw_core.remediation: threat store, message-ID validation, the remediation
      state machine, audit and notification sinks
    - mw_core.pipeline: budgeted batch ingestion

Example:
    Check one parsed email::

        from mw_core.intel import Verdict

        # orchestrator: a configured ThreatCheckOrchestrator
        result = await orchestrator.check_parsed_email(email)
        if result.overall_verdict == Verdict.MALICIOUS:
            ...
"""

__version__ = "0.1.0"

from mw_core.config import MailwardConfig, load_config
from mw_core.errors import (
    AuthenticationError,
    DataIntegrityError,
    FeedFetchError,
    InvalidTransitionError,
    MailwardError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
    UnresolvableMessageError,
    WhoisLookupError,
)
from mw_core.logging_config import configure_logging

__all__ = [
    "__version__",
    # Configuration
    "MailwardConfig",
    "configure_logging",
    "load_config",
    # Errors
    "AuthenticationError",
    "DataIntegrityError",
    "FeedFetchError",
    "InvalidTransitionError",
    "MailwardError",
    "ProviderError",
    "RateLimitError",
    "TransientProviderError",
    "UnresolvableMessageError",
    "WhoisLookupError",
]
