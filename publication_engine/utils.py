"""
Shared utility functions used throughout the publication engine.

Provides:
    - utc_now(): Timezone-aware UTC datetime (for Supabase TIMESTAMPTZ columns)
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_timestamp(value): Parse a store timestamp into aware UTC
    - normalize_platform(name): Canonical platform identifier
    - @with_retry: Async decorator with exponential backoff for idempotent reads
"""

from datetime import datetime, timezone
import asyncio
import logging
from functools import wraps
from typing import Callable, TypeVar, Any, Tuple, Type, Optional, Union

from publication_engine.exceptions import RetryExhaustedError, ValidationError

T = TypeVar("T")


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps stored in Supabase must be timezone-aware (TIMESTAMPTZ)
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    The scheduler's eligibility check (``scheduled_at <= now``) relies on
    this clock, never on local time.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) from a store row into aware UTC.

    PostgREST renders ``TIMESTAMPTZ`` columns with a ``Z`` or ``+00:00``
    suffix; both are accepted.

    Raises:
        ValidationError: If *value* is not a parseable timestamp.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid timestamp {value!r}: {exc}") from exc
    return ensure_utc(parsed)


# ===========================================================================
# PLATFORM IDENTIFIERS
# ===========================================================================


def normalize_platform(name: str) -> str:
    """Return the canonical form of a platform identifier.

    Platform names arrive from job rows, credential rows and configuration
    with inconsistent casing; every lookup goes through this function.

    Raises:
        ValidationError: If *name* is empty.
    """
    if name is None or not str(name).strip():
        raise ValidationError("platform cannot be empty")
    return str(name).strip().lower()


# ===========================================================================
# RETRY DECORATOR WITH EXPONENTIAL BACKOFF
# Only for idempotent reads (credential listing). Posting calls are never
# wrapped: a failed dispatch is terminal for its job.
# ===========================================================================


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Decorator for async retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default ``3``).
        base_delay: Initial delay in seconds before the first retry.
            Subsequent delays grow exponentially:
            ``base_delay * (2 ** (attempt - 1))``.
        retryable_exceptions: Exception types that trigger a retry. Anything
            else propagates immediately.
        operation_name: Name used in log messages. Defaults to the wrapped
            function's ``__name__``.

    Raises:
        RetryExhaustedError: When all attempts have failed. The last
            exception is available as ``last_error``.

    Usage::

        @with_retry(max_attempts=3, retryable_exceptions=(httpx.HTTPError,))
        async def list_credentials(self) -> list:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    last_error = e
                    if attempt < max_attempts:
                        delay = base_delay * (2 ** (attempt - 1))
                        logging.warning(
                            "[RETRY] %s attempt %d/%d failed: %s. "
                            "Retrying in %.1fs...",
                            op_name,
                            attempt,
                            max_attempts,
                            e,
                            delay,
                        )
                        await asyncio.sleep(delay)
                    else:
                        logging.error(
                            "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                            op_name,
                            max_attempts,
                            e,
                        )
            raise RetryExhaustedError(
                op_name, max_attempts, last_error  # type: ignore[arg-type]
            )

        return async_wrapper  # type: ignore[return-value]

    return decorator
