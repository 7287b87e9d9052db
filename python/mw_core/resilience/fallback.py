"""Run external calls behind a circuit breaker with neutral fallbacks.

Fallback values deliberately sit in the middle of every scale (risk 50/100,
category "unverified", age -1) so an unverified indicator can never be
mistaken for one that was checked and found clean.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from mw_core.intel.models import DomainIntelResult, IpIntelResult, UrlIntelResult
from mw_core.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger()

T = TypeVar("T")

CIRCUIT_OPEN_REASON = "circuit_open"
TIMEOUT_REASON = "timeout"
DEADLINE_REASON = "deadline_exceeded"
UNVERIFIED = "unverified"
NEUTRAL_SCORE = 50


@dataclass
class FallbackResult(Generic[T]):
    """Outcome of a protected call.

    Attributes:
        data: Real result, or the fallback value when ``from_fallback`` is set
        from_fallback: True when ``data`` came from the fallback function
        degraded: True when the dependency could not be used
        reason: "circuit_open", "timeout" or the error message
    """

    data: T
    from_fallback: bool = False
    degraded: bool = False
    reason: str | None = None


async def execute_with_fallback(
    breaker: CircuitBreaker,
    dependency: str,
    operation: Callable[[], Awaitable[T]],
    fallback_fn: Callable[[], T],
    *,
    timeout: float | None = None,
    timeout_is_failure: bool = True,
) -> FallbackResult[T]:
    """Call ``operation`` unless the dependency's circuit is open.

    Never raises for operation failures: they are recorded on the breaker,
    logged, and replaced by ``fallback_fn()``.

    Args:
        breaker: Circuit registry.
        dependency: Circuit name, e.g. "threat-intel-service".
        operation: Zero-argument coroutine factory performing the call.
        fallback_fn: Produces the neutral result.
        timeout: Optional deadline in seconds.
        timeout_is_failure: Whether expiry counts against the dependency. Pass
            False when ``timeout`` is what is left of a caller's deadline
            rather than the dependency's own time limit.

    Returns:
        FallbackResult wrapping the real or fallback data.
    """
    if breaker.is_circuit_open(dependency):
        logger.debug("dependency_skipped_circuit_open", dependency=dependency)
        return FallbackResult(
            data=fallback_fn(), from_fallback=True, degraded=True, reason=CIRCUIT_OPEN_REASON
        )

    try:
        if timeout is not None:
            data = await asyncio.wait_for(operation(), timeout=timeout)
        else:
            data = await operation()
    except TimeoutError:
        if not timeout_is_failure:
            logger.info("dependency_call_deadline_exceeded", dependency=dependency, timeout=timeout)
            return FallbackResult(
                data=fallback_fn(), from_fallback=True, degraded=True, reason=DEADLINE_REASON
            )
        breaker.record_failure(dependency)
        logger.warning("dependency_call_timed_out", dependency=dependency, timeout=timeout)
        return FallbackResult(
            data=fallback_fn(), from_fallback=True, degraded=True, reason=TIMEOUT_REASON
        )
    except Exception as e:
        breaker.record_failure(dependency)
        reason = str(e) or type(e).__name__
        logger.warning(
            "dependency_call_failed",
            dependency=dependency,
            error=reason,
            error_type=type(e).__name__,
        )
        return FallbackResult(data=fallback_fn(), from_fallback=True, degraded=True, reason=reason)

    breaker.record_success(dependency)
    return FallbackResult(data=data)


async def execute_multiple_with_fallback(
    breaker: CircuitBreaker,
    calls: Iterable[tuple[str, Callable[[], Awaitable[T]], Callable[[], T]]],
    *,
    timeout: float | None = None,
) -> list[FallbackResult[T]]:
    """Run several protected calls concurrently, keeping partial results.

    Each call is a ``(dependency, operation, fallback_fn)`` tuple. Results come
    back in input order.
    """
    return list(
        await asyncio.gather(
            *(
                execute_with_fallback(breaker, dependency, operation, fallback_fn, timeout=timeout)
                for dependency, operation, fallback_fn in calls
            )
        )
    )


# =============================================================================
# Neutral Defaults
# =============================================================================


def default_url_check_result(url: str) -> UrlIntelResult:
    return UrlIntelResult(
        url=url,
        is_malicious=False,
        threat_types=[UNVERIFIED],
        risk_score=NEUTRAL_SCORE,
        sources=["fallback_unverified"],
    )


def default_domain_check_result(domain: str) -> DomainIntelResult:
    return DomainIntelResult(
        domain=domain,
        is_suspicious=False,
        reputation_score=NEUTRAL_SCORE,
        categories=[UNVERIFIED],
        age_days=-1,
    )


def default_ip_check_result(ip: str) -> IpIntelResult:
    return IpIntelResult(ip=ip, abuse_confidence=NEUTRAL_SCORE, country="UNVERIFIED")
