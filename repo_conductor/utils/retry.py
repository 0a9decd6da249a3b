"""Retry decorator for transient failures.

SCM REST calls retry transport errors and throttled or 5xx responses; the
worktree manager gives ``git worktree add`` a second attempt after pruning
stale registrations.

Example:
    >>> @async_retry(
    ...     max_attempts=3,
    ...     exceptions=(httpx.TransportError, ExternalServiceError),
    ...     retry_if=is_transient_error,
    ... )
    ... async def get_work_item(item_id: int) -> WorkItem:
    ...     ...

The delay before attempt N+1 is ``backoff_factor ** N`` seconds, capped at
``max_delay``. A backoff factor of 0 retries immediately.
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from repo_conductor.exceptions import ExternalServiceError

log = structlog.get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient_error(error: BaseException) -> bool:
    """True for network failures and HTTP statuses worth retrying."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, ExternalServiceError):
        return error.status_code in TRANSIENT_STATUS_CODES
    return False


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    retry_if: Callable[[Exception], bool] | None = None,
    max_delay: float = 30.0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Retry an async function with exponential backoff.

    Args:
        max_attempts: Total number of calls, including the first
        backoff_factor: Base of the exponential delay
        exceptions: Exception types that may trigger a retry
        retry_if: Further filter on a caught exception; returning False
            re-raises it at once
        max_delay: Upper bound for a single delay, in seconds

    Raises:
        ValueError: If ``max_attempts`` is less than 1
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        name = getattr(func, "__qualname__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt >= max_attempts:
                        log.error("retry_exhausted", function=name, attempts=attempt, error=str(e))
                        raise

                    delay = min(backoff_factor**attempt, max_delay) if backoff_factor else 0.0
                    log.warning(
                        "retry_attempt",
                        function=name,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
