"""
Retry with exponential backoff.

Only used to establish the datastore connection at startup. Business
operations are never retried.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.logging import get_logger


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter and delay > 0:
            delay += random.uniform(-0.1 * delay, 0.1 * delay)
        return max(0.0, delay)


class RetryError(Exception):
    """Raised when every attempt failed; wraps the last failure."""

    def __init__(self, message: str, last_exception: Optional[BaseException], attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = (Exception,),
                       config: Optional[RetryConfig] = None) -> Callable:
    """Decorate an async callable so it is retried on ``exceptions``."""
    config = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        name = getattr(func, "__qualname__", repr(func))
        logger = get_logger("retry")

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_exception: Optional[BaseException] = None

            for attempt in range(1, config.max_attempts + 1):
                try:
                    result = await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == config.max_attempts:
                        break
                    delay = config.delay_for(attempt)
                    logger.warning(
                        "Attempt failed, retrying",
                        function=name,
                        attempt=attempt,
                        attempts_left=config.max_attempts - attempt,
                        delay=round(delay, 3),
                        error=str(e)
                    )
                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info("Retry succeeded", function=name, attempt=attempt)
                return result

            logger.error(
                "All retry attempts exhausted",
                function=name,
                max_attempts=config.max_attempts,
                error=str(last_exception)
            )
            raise RetryError(
                f"{name} failed after {config.max_attempts} attempts",
                last_exception=last_exception,
                attempts=config.max_attempts
            ) from last_exception

        return wrapper

    return decorator
