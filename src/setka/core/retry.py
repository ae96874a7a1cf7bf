"""Bounded exponential-backoff retry around a single remote generation call.

The hosted image API rate-limits aggressively and occasionally answers with
an empty candidate.  Both conditions usually clear up after a short wait, so
every generation call goes through :func:`call_with_retry`:

- attempt the call
- on a retriable failure, sleep ``initial_delay * 2 ** (attempt - 1)`` and
  try again, up to ``max_retries`` times
- on a terminal failure, or once retries are exhausted, re-raise the
  underlying error unchanged

Only one attempt is ever in flight for a logical request.  Waiting happens
through an injectable ``sleep`` coroutine so callers (and tests) control how
suspension is performed.

Usage Example
-------------
    from setka.core.retry import call_with_retry

    image = await call_with_retry(
        lambda: client.generate_image("a lighthouse", "16:9", "1024x576"),
        description="text-to-image",
    )
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import classify_exception, is_retriable

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
INITIAL_DELAY = 2.0

T = TypeVar("T")


def backoff_delay(attempt: int, initial_delay: float = INITIAL_DELAY) -> float:
    """Return the wait before retrying after failed attempt number *attempt*.

    Args:
        attempt: One-based number of the attempt that just failed.
        initial_delay: Delay in seconds after the first failure.

    Returns:
        Delay in seconds.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return initial_delay * 2 ** (attempt - 1)


async def call_with_retry(
    thunk: Callable[[], Awaitable[T]],
    *,
    max_retries: int = MAX_RETRIES,
    initial_delay: float = INITIAL_DELAY,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    classify: Callable[[BaseException], BaseException] = classify_exception,
    description: str = "generation",
) -> T:
    """Run *thunk* with bounded exponential-backoff retry.

    Args:
        thunk: Zero-argument callable returning a fresh awaitable per attempt.
        max_retries: Retries after the first attempt (total attempts is
            ``max_retries + 1``).
        initial_delay: Seconds to wait after the first failed attempt.
        sleep: Coroutine function used to wait between attempts.
        classify: Maps raw exceptions onto the generation error taxonomy.
        description: Label used in log messages.

    Returns:
        Whatever the first successful attempt returns.

    Raises:
        GenerationError: The terminal or final retriable error.
        Exception: Any unclassified error raised by *thunk*, unchanged.
    """
    attempt = 1
    while True:
        try:
            return await thunk()
        except Exception as exc:
            error = classify(exc)

            if is_retriable(error) and attempt <= max_retries:
                delay = backoff_delay(attempt, initial_delay)
                logger.warning(
                    f"Retriable error on {description}: {error}. "
                    f"Retrying in {delay:.1f}s (attempt {attempt}/{max_retries})"
                )
                await sleep(delay)
                attempt += 1
                continue

            logger.error(f"Error on {description} at attempt {attempt}: {error}")
            if error is exc:
                raise
            raise error from exc
