"""Backoff retries for calls to the git hosting API.

Publishing a pull request talks to a remote service that may drop
connections or answer 502/503 while it restarts. ``async_retry`` retries
such calls a few times. It is unrelated to the feedback-driven re-planning
of a workflow, which :mod:`pipewright.engine.retry_policy` decides.

Backoff Formula:
    delay = min(backoff_factor ** attempt_number, max_delay)
    For backoff_factor=2.0: 2s, 4s, 8s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import httpx
import structlog

log = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})


def is_transient_http_error(error: BaseException) -> bool:
    """Check whether an httpx error is worth retrying.

    Transport errors always are. Status errors only for rate limiting and
    gateway failures; a 4xx answer will not change on a second try.
    """
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, httpx.TransportError)


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[BaseException], bool] | None = None,
    max_delay: float = 30.0,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up.
        backoff_factor: Base for exponential backoff calculation.
        exceptions: Exception types that may trigger a retry. Others
            propagate immediately.
        retry_if: Optional predicate narrowing ``exceptions`` further. A
            caught exception it rejects propagates immediately.
        max_delay: Upper bound for a single backoff delay in seconds.

    Raises:
        The last caught exception if all attempts are exhausted.

    Example:
        >>> @async_retry(exceptions=(httpx.HTTPError,), retry_if=is_transient_http_error)
        ... async def open_pull_request(...):
        ...     ...
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
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
                        log.error("retry_exhausted", function=func.__name__, attempts=attempt, error=str(e))
                        raise

                    delay = min(backoff_factor**attempt, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
