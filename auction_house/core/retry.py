"""Retry utilities with exponential backoff.

Used in two places: the engine backs off between conditional-write attempts
when concurrent bids collide, and callers (the expiry worker, scripts) retry
operations that failed with ``StoreUnavailableError``.
"""
import logging
import random
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds (doubles each retry)
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff (default: 2)
        jitter: Add randomness to prevent thundering herd (default: True)
    """

    def __init__(
        self,
        max_retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given retry attempt.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry

        Example:
            With initial_delay=1.0, exponential_base=2.0:
            - attempt 0: 1.0s
            - attempt 1: 2.0s
            - attempt 2: 4.0s
        """
        delay = self.initial_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            delay += random.uniform(0, 0.3 * delay)

        return delay


def retry_sync(
    func: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    retry_on_exceptions: tuple = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Retry a synchronous function with exponential backoff.

    Args:
        func: Function to retry
        *args: Positional arguments for func
        config: Retry configuration (uses defaults if None)
        retry_on_exceptions: Tuple of exception types to retry on
        sleep: Sleep function, swapped out in tests
        **kwargs: Keyword arguments for func

    Returns:
        Result from successful function call

    Raises:
        The last exception if all retries fail
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            result = func(*args, **kwargs)

            if attempt > 0:
                logger.info(f"🔁 {func.__name__} succeeded after {attempt} retries")

            return result

        except retry_on_exceptions as e:
            if attempt >= config.max_retries:
                logger.error(
                    f"❌ {func.__name__} failed, all {attempt + 1} attempts exhausted: {e}"
                )
                raise

            delay = config.get_delay(attempt)
            logger.warning(
                f"⚠️  {func.__name__} failed (attempt {attempt + 1}/{config.max_retries}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)

    raise RuntimeError("Retry logic error")
