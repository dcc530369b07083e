"""Fixed-window call budgets per integration operation, with backoff retry."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from ..errors import RateLimitExceededError
from ..log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MAX_BACKOFF_SECONDS = 30.0

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")


class RateLimitDefinition(BaseModel):
    limit: int
    window_seconds: float


class RateLimit(BaseModel):
    """Live counter for one ``integration:operation`` key."""

    integration: str
    operation: str
    limit: int
    window_seconds: float
    current_count: int = 0
    reset_at: float


class RateLimitStatus(BaseModel):
    limited: bool
    current_usage: int
    limit: int
    retry_after: Optional[int] = None  # seconds until the window resets


DEFAULT_LIMITS: dict[str, RateLimitDefinition] = {
    "google_drive:search": RateLimitDefinition(limit=100, window_seconds=60),
    "google_drive:read": RateLimitDefinition(limit=100, window_seconds=60),
    "gmail:send": RateLimitDefinition(limit=100, window_seconds=86_400),
    "gmail:read": RateLimitDefinition(limit=250, window_seconds=1),
    "google_calendar:create": RateLimitDefinition(limit=50, window_seconds=60),
    "google_calendar:read": RateLimitDefinition(limit=100, window_seconds=60),
    "claude:generate": RateLimitDefinition(limit=60, window_seconds=60),
}


def is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitExceededError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    return min(1.0 * 2 ** attempt, MAX_BACKOFF_SECONDS)


class RateLimiter:
    """Counts calls per ``integration:operation`` inside a fixed window.

    Keys without a definition are never limited. A window starts lazily on the
    first call for a key and that first call counts towards it.
    """

    def __init__(
        self,
        definitions: Optional[dict[str, RateLimitDefinition]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.definitions = dict(DEFAULT_LIMITS if definitions is None else definitions)
        self._clock = clock
        self._sleep = sleep
        self._limits: dict[str, RateLimit] = {}

    def check_limit(self, integration: str, operation: str) -> bool:
        """Consume one call from the budget. Returns False when exhausted."""
        key = f"{integration}:{operation}"
        definition = self.definitions.get(key)
        if definition is None:
            return True

        now = self._clock()
        limit = self._limits.get(key)
        if limit is None:
            self._limits[key] = RateLimit(
                integration=integration,
                operation=operation,
                limit=definition.limit,
                window_seconds=definition.window_seconds,
                current_count=1,
                reset_at=now + definition.window_seconds,
            )
            return True

        if now >= limit.reset_at:
            limit.current_count = 1
            limit.reset_at = now + limit.window_seconds
            return True

        if limit.current_count >= limit.limit:
            logger.warning(
                "Rate limit reached for %s (%d/%d)", key, limit.current_count, limit.limit
            )
            return False

        limit.current_count += 1
        return True

    def get_status(self, integration: str, operation: str) -> RateLimitStatus:
        key = f"{integration}:{operation}"
        limit = self._limits.get(key)
        if limit is None:
            definition = self.definitions.get(key)
            return RateLimitStatus(
                limited=False,
                current_usage=0,
                limit=definition.limit if definition else 0,
            )

        now = self._clock()
        if now >= limit.reset_at:
            return RateLimitStatus(limited=False, current_usage=0, limit=limit.limit)

        limited = limit.current_count >= limit.limit
        return RateLimitStatus(
            limited=limited,
            current_usage=limit.current_count,
            limit=limit.limit,
            retry_after=int(limit.reset_at - now) + 1 if limited else None,
        )

    def get_all_limits(self) -> dict[str, RateLimit]:
        return {key: limit.model_copy() for key, limit in self._limits.items()}

    def reset(self, integration: str | None = None, operation: str | None = None) -> None:
        """Drop counters for one key, or all counters when no key is given."""
        if integration is None:
            self._limits.clear()
            return
        self._limits.pop(f"{integration}:{operation}", None)

    def require(self, integration: str, operation: str) -> None:
        """Like ``check_limit`` but raises when the budget is exhausted."""
        if not self.check_limit(integration, operation):
            status = self.get_status(integration, operation)
            raise RateLimitExceededError(integration, operation, status.retry_after)

    async def retry_with_backoff(
        self,
        fn: Callable[[], Awaitable[T]],
        max_retries: int = 5,
    ) -> T:
        """Await ``fn`` and retry rate-limit failures with exponential backoff.

        ``max_retries`` is the total number of attempts; there is no sleep after
        the last one, whose rate-limit error is re-raised. Any other exception
        propagates immediately.
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except Exception as e:
                if not is_rate_limit_error(e) or attempt + 1 >= max_retries:
                    raise
                delay = backoff_delay(attempt)
                logger.info(
                    "Rate limited (attempt %d/%d), retrying in %.0fs: %s",
                    attempt + 1, max_retries, delay, e,
                )
                await self._sleep(delay)
                attempt += 1
