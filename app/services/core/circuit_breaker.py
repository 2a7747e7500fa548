"""
Circuit breaker for the live scoring feed.

Uses pybreaker. After DEFAULT_FAIL_MAX consecutive feed failures the breaker
opens and further standings requests fail immediately until
DEFAULT_RESET_TIMEOUT elapses; the next request then tries the feed
(half-open).

Circuit Breakers:
- datagolf_breaker: DataGolf live-tournament-stats / field-updates feeds
"""
import asyncio
from functools import wraps
from typing import Any, Callable

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

from app.core.logging import get_logger
from app.core.metrics import circuit_breaker_state

logger = get_logger(__name__)

DEFAULT_FAIL_MAX = 5  # Number of failures before opening circuit
DEFAULT_RESET_TIMEOUT = 60  # Seconds before attempting to close circuit

_STATE_GAUGE_VALUES = {"closed": 0, "open": 1, "half-open": 2}


class MetricsListener(CircuitBreakerListener):
    """Mirror breaker state changes into the circuit_breaker_state gauge."""

    def state_change(self, cb, old_state, new_state):
        name = getattr(new_state, "name", str(new_state))
        circuit_breaker_state.labels(service=cb.name).set(_STATE_GAUGE_VALUES.get(name, 0))
        logger.warning(f"Circuit breaker '{cb.name}' changed state: {getattr(old_state, 'name', old_state)} -> {name}")


# ============================================================================
# CIRCUIT BREAKERS
# ============================================================================

datagolf_breaker = CircuitBreaker(
    fail_max=DEFAULT_FAIL_MAX,
    reset_timeout=DEFAULT_RESET_TIMEOUT,
    listeners=[MetricsListener()],
    name="datagolf",
)


def get_all_breaker_states() -> dict[str, str]:
    """Current state of every breaker, keyed by breaker name."""
    return {datagolf_breaker.name: datagolf_breaker.current_state}


def reset_breaker(breaker: CircuitBreaker) -> None:
    """
    Manually reset a circuit breaker to closed state.

    Use with caution - only reset if you know the service has recovered.
    """
    breaker.close()
    logger.warning(f"Circuit breaker '{breaker.name}' manually reset to CLOSED state")


# ============================================================================
# DECORATOR
# ============================================================================

def with_circuit_breaker(
    breaker: CircuitBreaker,
    fallback: Any = None,
    fallback_func: Callable | None = None,
):
    """
    Decorator to wrap a function with circuit breaker protection.

    Args:
        breaker: The circuit breaker to use
        fallback: Value to return when circuit is open
        fallback_func: Optional function to call when circuit is open
                       (takes precedence over fallback; may raise)

    Example:
        @with_circuit_breaker(datagolf_breaker, fallback_func=feed_unavailable)
        async def fetch_live_stats():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await breaker.call_async(func, *args, **kwargs)
            except CircuitBreakerError:
                logger.warning(
                    f"Circuit breaker '{breaker.name}' is OPEN - using fallback for {func.__name__}"
                )
                if fallback_func:
                    return fallback_func(*args, **kwargs)
                return fallback

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return breaker.call(func, *args, **kwargs)
            except CircuitBreakerError:
                logger.warning(
                    f"Circuit breaker '{breaker.name}' is OPEN - using fallback for {func.__name__}"
                )
                if fallback_func:
                    return fallback_func(*args, **kwargs)
                return fallback

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
