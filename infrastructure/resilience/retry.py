# infrastructure/resilience/retry.py
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from domain.errors import UpstreamError
from shared.logging import logger


class RetryExhaustedError(UpstreamError):
    """Every attempt failed with a transient error"""

    def __init__(self, message: str, attempts: int, last_error: UpstreamError):
        super().__init__(message, transient=True, status_code=last_error.status_code)
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient upstream failures.

    Only ``UpstreamError`` with ``transient=True`` is retried. Permanent
    upstream errors and anything else propagate on the first attempt.
    """
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt"""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[Any]], description: str = "operation") -> Any:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except UpstreamError as e:
                if not e.transient:
                    raise
                if attempt >= self.max_attempts:
                    raise RetryExhaustedError(
                        f"{description} failed after {attempt} attempts: {e.message}",
                        attempts=attempt,
                        last_error=e)

                delay = self.delay_for(attempt)
                logger.warning("Transient upstream failure, retrying",
                               operation=description,
                               attempt=attempt,
                               delay_seconds=delay,
                               error=e.message)
                await self.sleep(delay)
