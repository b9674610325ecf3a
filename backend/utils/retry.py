import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import httpx

from utils.logger import get_logger

logger = get_logger("retry")


class RetryConfig:
    """Configuration for retry behavior.

    ``rate_limit_exceptions`` are retried like ``retryable_exceptions`` but
    back off from ``rate_limit_delay`` instead of ``base_delay``. A
    ``retry_after`` attribute on the raised error (seconds) is honoured as a
    lower bound.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 20.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        rate_limit_delay: float = 2.0,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        rate_limit_exceptions: Tuple[Type[BaseException], ...] = (),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.rate_limit_delay = rate_limit_delay
        self.retryable_exceptions = retryable_exceptions
        self.rate_limit_exceptions = rate_limit_exceptions


def calculate_delay(attempt: int, config: RetryConfig, *, rate_limited: bool = False) -> float:
    """Calculate delay with exponential backoff and optional jitter"""
    base = config.rate_limit_delay if rate_limited else config.base_delay
    delay = min(base * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_rate_limited(error: BaseException, config: RetryConfig) -> bool:
    return bool(config.rate_limit_exceptions) and isinstance(error, config.rate_limit_exceptions)


def is_retryable_error(error: BaseException, config: RetryConfig) -> bool:
    """Check if an error should be retried"""
    return is_rate_limited(error, config) or isinstance(error, config.retryable_exceptions)


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    description: Optional[str] = None,
    **kwargs: Any,
) -> Any:
    """Await ``func(*args, **kwargs)``, retrying transient failures.

    The attempt counter lives on this call's stack only, so concurrent
    callers never share retry budgets. The last error is re-raised once
    attempts are exhausted; non-retryable errors propagate immediately.
    """
    config = config or RetryConfig()
    name = description or getattr(func, "__name__", "call")
    last_error: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            last_error = e

            if not is_retryable_error(e, config):
                raise

            if attempt >= config.max_attempts - 1:
                logger.warning(
                    "All retry attempts exhausted",
                    function=name,
                    attempts=config.max_attempts,
                    error=str(e) or repr(e),
                    error_type=type(e).__name__,
                )
                break

            rate_limited = is_rate_limited(e, config)
            delay = calculate_delay(attempt, config, rate_limited=rate_limited)
            retry_after = getattr(e, "retry_after", None)
            if rate_limited and retry_after:
                delay = max(delay, float(retry_after))

            logger.info(
                "Retrying after error",
                function=name,
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay=round(delay, 3),
                rate_limited=rate_limited,
                error=str(e) or repr(e),
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    raise last_error

