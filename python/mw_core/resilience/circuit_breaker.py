"""Per-dependency circuit breakers.

Each external dependency (a reputation feed, the intel API, WHOIS, ...) gets
an independent circuit keyed by name:

- closed: calls flow normally; consecutive failures are counted
- open: calls fail fast and callers serve a fallback
- half-open: one probe call is let through after the reset timeout

The open → half-open transition is evaluated when the circuit is inspected,
so there is no background timer. State is process-local and guarded by a
``threading.Lock``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog

from mw_core.config import CircuitBreakerConfig

logger = structlog.get_logger()


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


# Dependencies reported by the health endpoint.
MONITORED_DEPENDENCIES: tuple[str, ...] = (
    "phishtank",
    "urlhaus",
    "openphish",
    "threat-feeds",
    "threat-intel-service",
    "domain-age",
    "ip-blocklist",
    "whois",
)


@dataclass
class CircuitState:
    """Failure bookkeeping for one dependency.

    Attributes:
        failures: Consecutive failures since the last success
        last_failure: Epoch seconds of the most recent failure
        last_success: Epoch seconds of the most recent success
        state: Current circuit status
        probe_started_at: When the half-open probe was handed out
    """

    failures: int = 0
    last_failure: float | None = None
    last_success: float | None = None
    state: CircuitStatus = CircuitStatus.CLOSED
    probe_started_at: float | None = None


@dataclass(frozen=True)
class ServiceHealth:
    """Health snapshot for one dependency."""

    service_name: str
    healthy: bool
    circuit_state: CircuitStatus
    consecutive_failures: int
    last_success: datetime | None
    last_failure: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "healthy": self.healthy,
            "circuit_state": self.circuit_state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


def _to_datetime(ts: float | None) -> datetime | None:
    return datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else None


class CircuitBreaker:
    """Registry of named circuits sharing one configuration."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the breaker.

        Args:
            config: Threshold and reset timeout. Defaults to 3 failures / 60s.
            clock: Epoch-seconds time source, injectable for tests.
        """
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._circuits: dict[str, CircuitState] = {}

    @property
    def failure_threshold(self) -> int:
        return self.config.failure_threshold

    @property
    def reset_timeout(self) -> float:
        return self.config.reset_timeout_seconds

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def is_circuit_open(self, name: str) -> bool:
        """Whether calls to ``name`` should be skipped right now.

        Moves an expired open circuit to half-open and hands out a single
        probe: the first caller after the timeout gets False, later callers get
        True until the probe reports back (or itself times out).
        """
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is None:
                return False
            now = self._clock()
            self._refresh_locked(name, circuit, now)

            if circuit.state == CircuitStatus.CLOSED:
                return False
            if circuit.state == CircuitStatus.OPEN:
                return True

            probe_stale = (
                circuit.probe_started_at is None
                or now - circuit.probe_started_at >= self.reset_timeout
            )
            if probe_stale:
                circuit.probe_started_at = now
                return False
            return True

    def record_success(self, name: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(name, CircuitState())
            previous = circuit.state
            circuit.failures = 0
            circuit.last_success = self._clock()
            circuit.state = CircuitStatus.CLOSED
            circuit.probe_started_at = None
        if previous != CircuitStatus.CLOSED:
            logger.info("circuit_closed", dependency=name, previous_state=previous.value)

    def record_failure(self, name: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(name, CircuitState())
            previous = circuit.state
            circuit.failures += 1
            circuit.last_failure = self._clock()
            circuit.probe_started_at = None
            if (
                previous == CircuitStatus.HALF_OPEN
                or circuit.failures >= self.failure_threshold
            ):
                circuit.state = CircuitStatus.OPEN
            failures = circuit.failures
            opened = previous != CircuitStatus.OPEN and circuit.state == CircuitStatus.OPEN

        if opened:
            logger.warning(
                "circuit_opened",
                dependency=name,
                failures=failures,
                previous_state=previous.value,
                reset_timeout=self.reset_timeout,
            )

    def _refresh_locked(self, name: str, circuit: CircuitState, now: float) -> None:
        if circuit.state != CircuitStatus.OPEN or circuit.last_failure is None:
            return
        if now - circuit.last_failure >= self.reset_timeout:
            circuit.state = CircuitStatus.HALF_OPEN
            circuit.probe_started_at = None
            logger.info("circuit_half_open", dependency=name, failures=circuit.failures)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def get_circuit_status(self, name: str) -> CircuitState:
        """Return a copy of the circuit for ``name`` (closed if never seen)."""
        with self._lock:
            circuit = self._circuits.get(name)
            if circuit is None:
                return CircuitState()
            self._refresh_locked(name, circuit, self._clock())
            return replace(circuit)

    def get_all_circuit_statuses(self) -> dict[str, CircuitState]:
        """Copies of every circuit that has recorded at least one call."""
        with self._lock:
            now = self._clock()
            for name, circuit in self._circuits.items():
                self._refresh_locked(name, circuit, now)
            return {name: replace(circuit) for name, circuit in self._circuits.items()}

    def reset_circuit(self, name: str) -> None:
        with self._lock:
            self._circuits.pop(name, None)
        logger.info("circuit_reset", dependency=name)

    def reset_all(self) -> None:
        with self._lock:
            count = len(self._circuits)
            self._circuits.clear()
        logger.info("circuits_reset", count=count)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def get_threat_intel_health(
        self, services: Iterable[str] = MONITORED_DEPENDENCIES
    ) -> list[ServiceHealth]:
        """Health of each monitored dependency, including ones never called."""
        health = []
        for name in services:
            circuit = self.get_circuit_status(name)
            health.append(
                ServiceHealth(
                    service_name=name,
                    healthy=circuit.state == CircuitStatus.CLOSED,
                    circuit_state=circuit.state,
                    consecutive_failures=circuit.failures,
                    last_success=_to_datetime(circuit.last_success),
                    last_failure=_to_datetime(circuit.last_failure),
                )
            )
        return health

    def get_degraded_services(self, services: Iterable[str] = MONITORED_DEPENDENCIES) -> list[str]:
        return [h.service_name for h in self.get_threat_intel_health(services) if not h.healthy]

    def is_threat_intel_degraded(self, services: Iterable[str] = MONITORED_DEPENDENCIES) -> bool:
        return bool(self.get_degraded_services(services))
