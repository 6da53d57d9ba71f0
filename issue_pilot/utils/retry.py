"""Retry utilities for handling transient I/O failures.

Provides a decorator for retrying async operations with exponential backoff.
The engine uses it in the persistence layer so that a flaky disk or network
mount does not immediately pause an execution.

Phase failures do NOT go through this decorator: they are classified and
handed to ``issue_pilot.engine.retry_policy`` so that every attempt is
recorded on the execution's audit trail.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.

Example:
    >>> from issue_pilot.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, backoff_factor=0.5, exceptions=(OSError,))
    ... async def write_state(path: Path, payload: str) -> None:
    ...     async with aiofiles.open(path, "w") as f:
    ...         await f.write(payload)

Backoff Formula:
    delay = min(backoff_factor * 2 ** (attempt_number - 1), max_delay)
    For backoff_factor=0.5: 0.5s, 1s, 2s, 4s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    max_delay: float | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up. The
            function will be called at most max_attempts times.
        backoff_factor: Delay in seconds after the first failure. Each
            further failure doubles it. A factor of 0 retries without
            waiting.
        exceptions: Exception types that trigger a retry. Other exceptions
            propagate immediately.
        max_delay: Upper bound on a single delay, in seconds.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retry attempts are exhausted.
        Exceptions not in the exceptions tuple are raised immediately.

    Note:
        Each retry is logged at WARNING level and exhausted retries at
        ERROR level.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_factor * 2 ** (attempt - 1)
                    if max_delay is not None:
                        delay = min(delay, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
