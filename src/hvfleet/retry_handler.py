"""Retry logic with exponential backoff for transient failures.

Used for directory API calls (network timeouts, throttling) and for
read-only hypervisor queries. Disk and VM mutations are not retried:
they are not generally idempotent.

Usage:
    @retry_with_exponential_backoff(max_attempts=3)
    def list_profiles():
        return session.get(url, timeout=30)
"""

import functools
import logging
import random
import time
from typing import Any, Callable, TypeVar

import requests

from hvfleet.log_sanitizer import LogSanitizer

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class TransientHTTPError(Exception):
    """Raised for HTTP responses whose status code is worth retrying."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def retry_with_exponential_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
) -> Callable[[F], F]:
    """Decorator for retrying operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        jitter: Add random jitter (±25%) to delays (default: True)
        retryable_exceptions: Tuple of exception types to retry
            (default: network errors and transient HTTP statuses)

    Returns:
        Decorated function that will retry on transient failures
    """
    if retryable_exceptions is None:
        retryable_exceptions = _get_default_retryable_exceptions()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    result = func(*args, **kwargs)

                    if attempt > 1:
                        logger.info(
                            f"{func.__name__} succeeded on attempt {attempt}/{max_attempts}"
                        )

                    return result

                except retryable_exceptions as e:
                    if attempt >= max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: "
                            f"{LogSanitizer.sanitize_exception(e)}"
                        )
                        raise

                    actual_delay = delay
                    if jitter:
                        jitter_amount = delay * 0.25
                        actual_delay = delay + random.uniform(-jitter_amount, jitter_amount)

                    actual_delay = min(actual_delay, max_delay)

                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt}/{max_attempts}, "
                        f"retrying in {actual_delay:.2f}s: {LogSanitizer.sanitize_exception(e)}"
                    )

                    time.sleep(actual_delay)
                    delay *= 2

            raise RuntimeError(f"{func.__name__} failed with unknown error")

        return wrapper  # type: ignore

    return decorator


def _get_default_retryable_exceptions() -> tuple[type[Exception], ...]:
    """Network errors, timeouts and transient HTTP statuses."""
    return (
        TimeoutError,
        ConnectionError,
        requests.ConnectionError,
        requests.Timeout,
        TransientHTTPError,
    )


def should_retry_http_error(status_code: int) -> bool:
    """Determine if HTTP status code should trigger retry.

    Retryable status codes:
        - 408: Request Timeout
        - 429: Too Many Requests (throttling)
        - 500, 502, 503, 504: server side failures
    """
    retryable_codes = {408, 429, 500, 502, 503, 504}
    return status_code in retryable_codes


__all__ = [
    "TransientHTTPError",
    "retry_with_exponential_backoff",
    "should_retry_http_error",
]
