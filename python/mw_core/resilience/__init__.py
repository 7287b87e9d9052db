"""Circuit breakers, retries and neutral fallbacks for external dependencies."""

from mw_core.resilience.circuit_breaker import (
    MONITORED_DEPENDENCIES,
    CircuitBreaker,
    CircuitState,
    CircuitStatus,
    ServiceHealth,
)
from mw_core.resilience.retry import RetryPolicy, RetryStats, is_retryable_error
from mw_core.resilience.fallback import (
    FallbackResult,
    default_domain_check_result,
    default_ip_check_result,
    default_url_check_result,
    execute_multiple_with_fallback,
    execute_with_fallback,
)

__all__ = [
    # Circuit breaker
    "MONITORED_DEPENDENCIES",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStatus",
    "ServiceHealth",
    # Retry
    "RetryPolicy",
    "RetryStats",
    "is_retryable_error",
    # Fallback
    "FallbackResult",
    "default_domain_check_result",
    "default_ip_check_result",
    "default_url_check_result",
    "execute_multiple_with_fallback",
    "execute_with_fallback",
]
