"""Tests for per-dependency circuit breakers."""

import pytest

from mw_core.config import CircuitBreakerConfig
from mw_core.resilience.circuit_breaker import (
    MONITORED_DEPENDENCIES,
    CircuitBreaker,
    CircuitStatus,
)


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    config = CircuitBreakerConfig(failure_threshold=3, reset_timeout_seconds=60)
    return CircuitBreaker(config, clock)


def trip(breaker: CircuitBreaker, name: str, times: int = 3) -> None:
    for _ in range(times):
        breaker.record_failure(name)


class TestCircuitTransitions:
    def test_unknown_dependency_is_closed(self, breaker: CircuitBreaker):
        assert breaker.is_circuit_open("phishtank") is False
        assert breaker.get_circuit_status("phishtank").state == CircuitStatus.CLOSED

    def test_opens_at_threshold(self, breaker: CircuitBreaker):
        trip(breaker, "urlhaus", 2)
        assert breaker.is_circuit_open("urlhaus") is False

        breaker.record_failure("urlhaus")

        assert breaker.is_circuit_open("urlhaus") is True
        status = breaker.get_circuit_status("urlhaus")
        assert status.state == CircuitStatus.OPEN
        assert status.failures == 3

    def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        trip(breaker, "urlhaus", 2)
        breaker.record_success("urlhaus")
        trip(breaker, "urlhaus", 2)
        assert breaker.is_circuit_open("urlhaus") is False

    def test_circuits_are_independent(self, breaker: CircuitBreaker):
        trip(breaker, "phishtank")
        assert breaker.is_circuit_open("phishtank") is True
        assert breaker.is_circuit_open("openphish") is False

    def test_half_open_after_timeout_allows_one_probe(self, breaker: CircuitBreaker, clock):
        trip(breaker, "whois")
        clock.advance(59)
        assert breaker.is_circuit_open("whois") is True

        clock.advance(1)
        assert breaker.is_circuit_open("whois") is False
        assert breaker.get_circuit_status("whois").state == CircuitStatus.HALF_OPEN
        # The probe is outstanding; everyone else keeps failing fast
        assert breaker.is_circuit_open("whois") is True

    def test_probe_success_closes(self, breaker: CircuitBreaker, clock):
        trip(breaker, "whois")
        clock.advance(60)
        assert breaker.is_circuit_open("whois") is False

        breaker.record_success("whois")

        status = breaker.get_circuit_status("whois")
        assert status.state == CircuitStatus.CLOSED
        assert status.failures == 0
        assert breaker.is_circuit_open("whois") is False

    def test_probe_failure_reopens(self, breaker: CircuitBreaker, clock):
        trip(breaker, "whois")
        clock.advance(60)
        assert breaker.is_circuit_open("whois") is False

        breaker.record_failure("whois")

        assert breaker.get_circuit_status("whois").state == CircuitStatus.OPEN
        assert breaker.is_circuit_open("whois") is True
        clock.advance(60)
        assert breaker.is_circuit_open("whois") is False

    def test_stale_probe_is_handed_out_again(self, breaker: CircuitBreaker, clock):
        trip(breaker, "whois")
        clock.advance(60)
        assert breaker.is_circuit_open("whois") is False
        clock.advance(60)
        assert breaker.is_circuit_open("whois") is False

    def test_reset_circuit(self, breaker: CircuitBreaker):
        trip(breaker, "urlhaus")
        breaker.reset_circuit("urlhaus")
        assert breaker.is_circuit_open("urlhaus") is False
        assert "urlhaus" not in breaker.get_all_circuit_statuses()

    def test_reset_all(self, breaker: CircuitBreaker):
        trip(breaker, "urlhaus")
        trip(breaker, "phishtank")
        breaker.reset_all()
        assert breaker.get_all_circuit_statuses() == {}

    def test_status_is_a_copy(self, breaker: CircuitBreaker):
        breaker.record_failure("urlhaus")
        status = breaker.get_circuit_status("urlhaus")
        status.failures = 100
        assert breaker.get_circuit_status("urlhaus").failures == 1


class TestHealth:
    def test_reports_every_monitored_dependency(self, breaker: CircuitBreaker):
        health = breaker.get_threat_intel_health()
        assert [h.service_name for h in health] == list(MONITORED_DEPENDENCIES)
        assert all(h.healthy for h in health)
        assert breaker.is_threat_intel_degraded() is False

    def test_open_circuit_is_degraded(self, breaker: CircuitBreaker):
        trip(breaker, "threat-intel-service")
        assert breaker.get_degraded_services() == ["threat-intel-service"]
        assert breaker.is_threat_intel_degraded() is True

    def test_half_open_is_not_healthy(self, breaker: CircuitBreaker, clock):
        trip(breaker, "whois")
        clock.advance(60)
        health = {h.service_name: h for h in breaker.get_threat_intel_health()}
        assert health["whois"].circuit_state == CircuitStatus.HALF_OPEN
        assert health["whois"].healthy is False

    def test_to_dict(self, breaker: CircuitBreaker):
        breaker.record_failure("urlhaus")
        (health,) = breaker.get_threat_intel_health(["urlhaus"])
        data = health.to_dict()
        assert data["circuit_state"] == "closed"
        assert data["consecutive_failures"] == 1
        assert data["last_failure"] is not None
        assert data["last_success"] is None
