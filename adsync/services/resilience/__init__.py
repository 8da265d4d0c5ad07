from adsync.services.resilience.circuit_breaker import CircuitBreaker, CircuitState
from adsync.services.resilience.rate_limiter import Admission, RateLimiter
from adsync.services.resilience.retry import RetryHandler, RetryResult

__all__ = [
    "Admission",
    "CircuitBreaker",
    "CircuitState",
    "RateLimiter",
    "RetryHandler",
    "RetryResult",
]
