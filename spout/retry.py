"""
Retry policy with exponential backoff.

One policy object per failure class; the pipeline uses a single instance for
ledger RPC calls. Transport errors are retried, permanent errors (program
rejections, encoding problems) propagate on the first attempt.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from spout.errors import PermanentError, TransportError

logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """Retry strategies."""
    FIXED = "fixed"                # Fixed delay between retries
    EXPONENTIAL = "exponential"    # Exponential backoff
    LINEAR = "linear"              # Linear increase


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with backoff for one failure class."""
    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay: float = 0.5        # Base delay in seconds
    max_delay: float = 8.0         # Maximum delay
    jitter: float = 0.1            # Random jitter (0-1)
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,)
    never_retry: Tuple[Type[BaseException], ...] = (PermanentError,)

    def calculate_delay(self, attempt: int) -> float:
        """Delay before attempt number ``attempt + 1`` (attempts are 1-based)."""
        if self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay
        elif self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * (2 ** (attempt - 1))

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, min(delay, self.max_delay))

    async def run(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        operation: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs,
    ) -> Any:
        """Await ``func(*args, **kwargs)``, retrying on ``retry_on`` errors."""
        name = operation or getattr(func, "__name__", "operation")
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func(*args, **kwargs)
            except self.never_retry:
                raise
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{name} failed after {attempt} attempts: {e}")
                    raise
                delay = self.calculate_delay(attempt)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = max(delay, float(retry_after))
                logger.warning(f"{name} attempt {attempt}/{self.max_attempts} failed: {e}; retrying in {delay:.2f}s")
                await sleep(delay)


NO_RETRY = RetryPolicy(max_attempts=1)
