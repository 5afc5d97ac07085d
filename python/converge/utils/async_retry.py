"""
converge/utils/async_retry.py

Provides a decorator to retry an async function with exponential backoff.
"""

import asyncio
import logging
import random
from typing import Any, Callable, Coroutine, Optional
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt_number: int,
    delay: float,
    multiplier: float = 2.0,
    max_delay: Optional[float] = None,
    jitter: bool = False,
) -> float:
    """Seconds to wait after failed attempt `attempt_number` (1-based).

    The base delay grows as delay * multiplier ** (attempt_number - 1), capped
    at `max_delay`. With `jitter`, a uniformly random value between zero and
    that bound is used instead ("full jitter").
    """
    bound = delay * (multiplier ** (attempt_number - 1))
    if max_delay is not None:
        bound = min(bound, max_delay)
    if jitter:
        return random.uniform(0.0, bound)
    return bound


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
    multiplier: float = 1.0,
    max_delay: Optional[float] = None,
    jitter: bool = False,
    retry_on: Optional[Callable[[BaseException], bool]] = None,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times. Between
    attempts it sleeps for `backoff_delay(...)` seconds, which is a constant
    `delay` with the default multiplier of 1.0. Exceptions for which
    `retry_on` returns False are raised immediately without further attempts.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds before the second attempt. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.
        multiplier (float, optional):
            Growth factor of the delay per attempt. Defaults to 1.0.
        max_delay (Optional[float], optional):
            Upper bound on a single delay. Defaults to None (unbounded).
        jitter (bool, optional):
            Randomize each delay between zero and its bound. Defaults to False.
        retry_on (Optional[Callable[[BaseException], bool]], optional):
            Predicate deciding whether an exception is worth retrying.
            Defaults to None (retry every Exception).

    Returns:
        Callable[[Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]]:
            A decorator that, when applied to an async function, returns a wrapped
            version that retries on exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if retry_on is not None and not retry_on(exc):
                        raise
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for %r failed: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    # If we have remaining attempts, retry
                    if remaining > 1:
                        await asyncio.sleep(
                            backoff_delay(
                                attempt_number, delay, multiplier, max_delay, jitter
                            )
                        )
                        return await attempt(remaining - 1, attempt_number + 1)

                    # Otherwise, no more attempts left
                    if noisy:
                        logger.error(
                            "All %d attempts failed for %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(retries, 1)

        return wrapper

    return decorator
