from .hitl import HITLGate, is_critical
from .rate_limiter import DEFAULT_LIMITS, RateLimitDefinition, RateLimiter, RateLimitStatus

__all__ = [
    "DEFAULT_LIMITS",
    "HITLGate",
    "RateLimitDefinition",
    "RateLimitStatus",
    "RateLimiter",
    "is_critical",
]
