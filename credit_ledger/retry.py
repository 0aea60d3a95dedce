"""
Bounded exponential backoff for storage calls.

Only failures classified as ``ErrorKind.TRANSIENT`` are retried. Domain
errors such as a missing user or insufficient credits propagate on the first
attempt without consuming a retry.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetryConfig
from .errors import ErrorKind, classify_error

T = TypeVar("T")

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryOptions:
    """Per-call overrides for the configured policy."""
    max_attempts: Optional[int] = None
    initial_delay: Optional[float] = None
    max_delay: Optional[float] = None
    backoff_multiplier: Optional[float] = None


def calculate_delay(attempt: int, initial_delay: float, max_delay: float, backoff_multiplier: float) -> float:
    """Delay in milliseconds before ``attempt`` (2 for the first retry)."""
    if attempt < 2:
        return 0
    return min(max_delay, initial_delay * backoff_multiplier ** (attempt - 2))


class RetryHandler:
    def __init__(
        self,
        config: RetryConfig,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.logger = logger or _logger
        self._sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]], options: Optional[RetryOptions] = None) -> T:
        options = options or RetryOptions()
        max_attempts = options.max_attempts if options.max_attempts is not None else self.config.max_attempts

        if not self.config.enabled or max_attempts <= 1:
            return await operation()

        initial_delay = options.initial_delay if options.initial_delay is not None else self.config.initial_delay
        max_delay = options.max_delay if options.max_delay is not None else self.config.max_delay
        multiplier = (
            options.backoff_multiplier if options.backoff_multiplier is not None
            else self.config.backoff_multiplier
        )

        attempt = 1
        while True:
            try:
                result = await operation()
            except Exception as e:
                if classify_error(e) != ErrorKind.TRANSIENT:
                    raise

                if attempt >= max_attempts:
                    self.logger.error(
                        "Max retry attempts reached (%d/%d): %s", attempt, max_attempts, e
                    )
                    raise

                attempt += 1
                delay = calculate_delay(attempt, initial_delay, max_delay, multiplier)
                self.logger.warning(
                    "Transient storage failure, retrying in %sms (attempt %d/%d): %s",
                    delay, attempt, max_attempts, e,
                )
                await self._sleep(delay / 1000)
                continue

            if attempt > 1:
                self.logger.info("Operation succeeded after %d attempts", attempt)
            return result
