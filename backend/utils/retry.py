import asyncio
import random
from functools import wraps
from typing import Callable, Optional, Type, Tuple
import httpx

from utils.logger import get_logger

logger = get_logger("retry")


class RetryConfig:
    """In-process retry policy for outbound HTTP (LLM, evidence sources)"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = False,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff for the zero-based ``attempt`` that just failed"""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    if isinstance(error, config.retryable_exceptions):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes
    return False


def _retry_after_seconds(error: Exception) -> Optional[float]:
    if not isinstance(error, httpx.HTTPStatusError) or error.response.status_code != 429:
        return None
    raw = error.response.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def with_retry(config: RetryConfig = None, sleep: Callable = None):
    """Decorator retrying an async callable on transient HTTP failures"""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            _sleep = sleep or asyncio.sleep
            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_error(e, config):
                        raise
                    if attempt >= config.max_attempts - 1:
                        logger.error(
                            "All retry attempts exhausted",
                            function=func.__name__,
                            attempts=config.max_attempts,
                            error=str(e),
                        )
                        raise

                    delay = calculate_delay(attempt, config)
                    retry_after = _retry_after_seconds(e)
                    if retry_after is not None:
                        delay = max(delay, retry_after)
                    logger.warning(
                        "Retrying after error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=config.max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await _sleep(delay)

        return wrapper

    return decorator
