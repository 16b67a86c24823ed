"""
Retry utilities for AWS calls made by the broker and the job store.

Exponential backoff with jitter; callers pick which exception types are
worth another attempt.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar, Union

logger = logging.getLogger(__name__)

R = TypeVar("R")

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class RetryError(Exception):
    """Raised when all retry attempts have been exhausted"""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts. Last error: {last_exception}")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        jitter_range: float = 0.1,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.jitter_range = jitter_range

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for given attempt number.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)

        if self.jitter and self.jitter_range > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay


async def retry_with_config(
    func: Callable[[], Awaitable[R]],
    config: RetryConfig,
    exceptions: ExceptionTypes = (Exception,),
) -> R:
    """
    Retry an async callable with custom retry configuration.

    Raises:
        RetryError: If all retry attempts fail
        Exception: If the callable raises an exception not in `exceptions`
    """
    last_exception: Optional[Exception] = None
    name = getattr(func, "__name__", "operation")

    for attempt in range(config.max_attempts):
        try:
            result = await func()
            if attempt > 0:
                logger.info(f"{name} succeeded after {attempt + 1} attempts")
            return result

        except exceptions as e:  # type: ignore[misc]
            last_exception = e  # type: ignore[assignment]

            if attempt + 1 >= config.max_attempts:
                break

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"{name} failed, retrying in {delay:.2f}s",
                extra={
                    "function": name,
                    "attempt": attempt + 1,
                    "max_attempts": config.max_attempts,
                    "exception_type": type(e).__name__,
                },
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise RetryError(config.max_attempts, last_exception or Exception("No exception captured during retries"))


class AsyncRetrier:
    """
    Reusable retry handler for consistent retry behavior.
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.stats: Dict[str, int] = {
            "total_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
        }

    async def call(self, func: Callable[[], Awaitable[R]], exceptions: ExceptionTypes = (Exception,)) -> R:
        self.stats["total_calls"] += 1
        try:
            result = await retry_with_config(func, self.config, exceptions)
        except RetryError:
            self.stats["failed_calls"] += 1
            raise
        self.stats["successful_calls"] += 1
        return result

    async def call_sync(self, func: Callable[[], Any], exceptions: ExceptionTypes = (Exception,)) -> Any:
        """Retry a blocking callable, running each attempt in the default executor."""

        async def _run_in_executor() -> Any:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, func)

        _run_in_executor.__name__ = getattr(func, "__name__", "sync_operation")
        return await self.call(_run_in_executor, exceptions)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.stats)
        stats["success_rate"] = stats["successful_calls"] / stats["total_calls"] if stats["total_calls"] else 0.0
        return stats


NETWORK_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=2.0,
    max_delay=30.0,
    exponential_base=2.0,
    jitter=True,
)

DATABASE_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay=0.5,
    max_delay=10.0,
    exponential_base=1.5,
    jitter=True,
)
