"""
Retry logic with exponential backoff.

Decorator for automatic retry with exponential backoff on retryable errors,
plus a bounded retry helper for persistence calls. Rate-limit class errors
wait longer than generic transient errors.
"""

import asyncio
import functools
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from shared.config import settings
from shared.errors import (
    CriticalIntegrityError,
    PersistenceError,
    RateLimitError,
    RetryableError,
    ValidationError,
    is_rate_limit_error,
)
from shared.logging import get_logger

T = TypeVar("T")
logger = get_logger("retry")

# Errors that a retry can never fix
NON_RETRYABLE_PERSISTENCE_ERRORS = (ValidationError, CriticalIntegrityError)


def _backoff_delay(base_delay: float, attempt: int, error: BaseException, rate_limit_multiplier: float) -> float:
    delay = base_delay * (2 ** attempt)
    if is_rate_limit_error(error):
        delay *= rate_limit_multiplier
    return delay


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 2,
    retryable_exceptions: Tuple[Type[Exception], ...] = (RetryableError, RateLimitError),
    rate_limit_multiplier: float = 4,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_delay: Base delay in seconds for exponential backoff (default: 2)
        retryable_exceptions: Tuple of exception types to retry on
        rate_limit_multiplier: Extra backoff factor for rate-limit class errors

    Returns:
        Decorated function

    Example:
        @retry_with_backoff(max_attempts=3, base_delay=2)
        async def call_api():
            # Will retry on RetryableError
            return await provider.call(...)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                last_exception = None

                for attempt in range(max_attempts):
                    try:
                        return await func(*args, **kwargs)
                    except retryable_exceptions as e:
                        last_exception = e
                        if attempt < max_attempts - 1:
                            delay = _backoff_delay(base_delay, attempt, e, rate_limit_multiplier)
                            logger.warning(
                                f"Retry attempt {attempt + 1}/{max_attempts} for {func.__name__} "
                                f"after {delay}s delay",
                                extra={"error": str(e), "attempt": attempt + 1}
                            )
                            await asyncio.sleep(delay)
                        else:
                            logger.error(
                                f"All {max_attempts} retry attempts failed for {func.__name__}",
                                extra={"error": str(e)}
                            )

                if last_exception:
                    raise last_exception
                raise RuntimeError(f"Function {func.__name__} failed after {max_attempts} attempts")

            return async_wrapper
        else:
            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> T:
                last_exception = None

                for attempt in range(max_attempts):
                    try:
                        return func(*args, **kwargs)
                    except retryable_exceptions as e:
                        last_exception = e
                        if attempt < max_attempts - 1:
                            delay = _backoff_delay(base_delay, attempt, e, rate_limit_multiplier)
                            logger.warning(
                                f"Retry attempt {attempt + 1}/{max_attempts} for {func.__name__} "
                                f"after {delay}s delay",
                                extra={"error": str(e), "attempt": attempt + 1}
                            )
                            time.sleep(delay)
                        else:
                            logger.error(
                                f"All {max_attempts} retry attempts failed for {func.__name__}",
                                extra={"error": str(e)}
                            )

                if last_exception:
                    raise last_exception
                raise RuntimeError(f"Function {func.__name__} failed after {max_attempts} attempts")

            return sync_wrapper

    return decorator


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str = "persistence operation",
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    rate_limit_multiplier: Optional[float] = None,
) -> T:
    """
    Run a store/repository call with the bounded persistence retry policy.

    Waits base_delay * attempt between attempts, multiplied for rate-limit
    class errors. Validation and integrity errors are raised immediately.

    Args:
        operation: Zero-argument coroutine factory
        description: Label used in logs and the final error
        max_attempts: Attempts before giving up (default: settings)
        base_delay: Base delay in seconds (default: settings)
        rate_limit_multiplier: Backoff factor for rate limits (default: settings)

    Returns:
        Result of the operation

    Raises:
        PersistenceError: If every attempt failed
    """
    attempts = max_attempts if max_attempts is not None else settings.persistence_max_attempts
    delay = base_delay if base_delay is not None else settings.persistence_base_delay_seconds
    multiplier = (
        rate_limit_multiplier if rate_limit_multiplier is not None
        else settings.rate_limit_backoff_multiplier
    )

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except NON_RETRYABLE_PERSISTENCE_ERRORS:
            raise
        except Exception as e:
            last_error = e
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts})",
                extra={"error": str(e), "attempt": attempt, "rate_limited": is_rate_limit_error(e)}
            )
            if attempt == attempts:
                break
            wait = delay * attempt
            if is_rate_limit_error(e):
                wait *= multiplier
            await asyncio.sleep(wait)

    raise PersistenceError(
        f"{description} failed after {attempts} attempts: {last_error}"
    ) from last_error
