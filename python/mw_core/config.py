"""Configuration for the threat-intel and remediation layers.

Provides frozen Pydantic models for every tunable component and a loader that
reads a YAML file and applies environment overrides for secrets and endpoints.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = structlog.get_logger()


class CacheConfig(BaseModel):
    """TTL and capacity for the per-indicator reputation caches."""

    model_config = ConfigDict(frozen=True)

    url_ttl_seconds: float = Field(default=3600.0, gt=0, description="URL reputation TTL")
    domain_ttl_seconds: float = Field(default=4 * 3600.0, gt=0, description="Domain TTL")
    ip_ttl_seconds: float = Field(default=2 * 3600.0, gt=0, description="IP TTL")
    max_urls: int = Field(default=50_000, ge=1)
    max_domains: int = Field(default=20_000, ge=1)
    max_ips: int = Field(default=10_000, ge=1)
    eviction_fraction: float = Field(
        default=0.1,
        gt=0.0,
        le=1.0,
        description="Share of entries dropped when a cache is full",
    )


class CircuitBreakerConfig(BaseModel):
    """Failure isolation settings applied to every dependency."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=3, ge=1)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)


class FeedConfig(BaseModel):
    """Reputation feed endpoints and refresh schedules."""

    model_config = ConfigDict(frozen=True)

    phishtank_url: str = "http://data.phishtank.com/data/{api_key}/online-valid.json"
    phishtank_api_key: str | None = None
    urlhaus_url: str = "https://urlhaus.abuse.ch/downloads/json_online/"
    openphish_url: str = "https://openphish.com/feed.txt"

    phishtank_refresh_seconds: float = Field(default=6 * 3600.0, gt=0)
    urlhaus_refresh_seconds: float = Field(default=3600.0, gt=0)
    openphish_refresh_seconds: float = Field(default=12 * 3600.0, gt=0)

    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_feed_size_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    user_agent: str = "Mailward-Email-Security/1.0"
    enable_heuristics: bool = Field(
        default=True,
        description="Run local URL pattern heuristics when no feed lists the URL",
    )


class DomainAgeConfig(BaseModel):
    """WHOIS lookup and domain-age scoring settings."""

    model_config = ConfigDict(frozen=True)

    whois_api_url: str | None = None
    whois_api_key: str | None = None
    whois_cache_ttl_seconds: float = Field(default=24 * 3600.0, gt=0)
    whois_timeout_seconds: float = Field(default=10.0, gt=0)
    max_concurrent_lookups: int = Field(default=5, ge=1)


class IpReputationConfig(BaseModel):
    """DNSBL and GeoIP lookup settings."""

    model_config = ConfigDict(frozen=True)

    geoip_api_url: str | None = None
    geoip_api_key: str | None = None
    dnsbl_timeout_seconds: float = Field(default=2.0, gt=0)
    batch_size: int = Field(default=10, ge=1)
    enable_dnsbl: bool = True


class IntelServiceConfig(BaseModel):
    """External threat-intelligence API."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    base_url: str = "https://api.threatintel.example.com/v1"
    feeds: list[str] = Field(default_factory=lambda: ["default"])
    timeout_seconds: float = Field(default=10.0, gt=0)


class ScoringConfig(BaseModel):
    """Weights and thresholds for the per-email risk score."""

    model_config = ConfigDict(frozen=True)

    url_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    domain_reputation_weight: float = Field(default=0.2, ge=0.0, le=1.0)
    new_domain_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    ip_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    unverified_contribution: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Share of a weight charged for an indicator that could not be verified",
    )
    malicious_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    suspicious_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    new_domain_days: int = Field(default=30, ge=1)

    max_urls: int = Field(default=50, ge=1)
    max_ips: int = Field(default=10, ge=1)
    check_concurrency: int = Field(default=5, ge=1)
    check_timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def validate_thresholds(self) -> ScoringConfig:
        """Suspicious must sit below malicious."""
        if self.suspicious_threshold >= self.malicious_threshold:
            raise ValueError("suspicious_threshold must be lower than malicious_threshold")
        return self


class RetryConfig(BaseModel):
    """Bounded exponential backoff for provider calls."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    jitter: bool = True


class RemediationConfig(BaseModel):
    """Mailbox remediation settings."""

    model_config = ConfigDict(frozen=True)

    gmail_quarantine_label: str = "Mailward/Quarantine"
    o365_quarantine_folder: str = "Quarantine"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class PipelineConfig(BaseModel):
    """Ingestion pipeline budget and action thresholds."""

    model_config = ConfigDict(frozen=True)

    budget_seconds: float = Field(default=50.0, gt=0)
    quarantine_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    block_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    @field_validator("block_threshold")
    @classmethod
    def validate_block_threshold(cls, v: float) -> float:
        """Blocking must require at least a moderately confident score."""
        if v < 0.5:
            raise ValueError(f"block_threshold must be >= 0.5, got {v}")
        return v


class MailwardConfig(BaseModel):
    """Root configuration."""

    model_config = ConfigDict(frozen=True)

    cache: CacheConfig = Field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    feeds: FeedConfig = Field(default_factory=FeedConfig)
    domain_age: DomainAgeConfig = Field(default_factory=DomainAgeConfig)
    ip_reputation: IpReputationConfig = Field(default_factory=IpReputationConfig)
    intel_service: IntelServiceConfig = Field(default_factory=IntelServiceConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)


# =============================================================================
# Loading
# =============================================================================

# (environment variable, section, field)
ENV_OVERRIDES: list[tuple[str, str, str]] = [
    ("PHISHTANK_API_KEY", "feeds", "phishtank_api_key"),
    ("WHOIS_API_URL", "domain_age", "whois_api_url"),
    ("WHOIS_API_KEY", "domain_age", "whois_api_key"),
    ("GEOIP_API_URL", "ip_reputation", "geoip_api_url"),
    ("GEOIP_API_KEY", "ip_reputation", "geoip_api_key"),
    ("THREAT_INTEL_API_KEY", "intel_service", "api_key"),
    ("THREAT_INTEL_BASE_URL", "intel_service", "base_url"),
]


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    for env_var, section, field_name in ENV_OVERRIDES:
        value = os.environ.get(env_var, "").strip()
        if not value:
            continue
        section_data = data.setdefault(section, {})
        if not isinstance(section_data, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
        section_data[field_name] = value
    return data


def load_config(path: str | Path | None = None) -> MailwardConfig:
    """Load configuration from YAML and the environment.

    Args:
        path: Optional YAML file. When omitted only defaults and environment
            overrides are used.

    Returns:
        Validated configuration.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the YAML document is not a mapping.
    """
    data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config root must be a mapping, got {type(loaded).__name__}")
        data = loaded
        logger.debug("config_loaded", path=str(config_path))

    return MailwardConfig.model_validate(_apply_env_overrides(data))
