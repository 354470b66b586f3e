"""Bounded polling helpers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from fw_autoscale.errors import WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL_SECONDS = 5.0


class InvocationDeadline:
    """Remaining execution time of the current invocation.

    The hosting runtime kills an invocation at its timeout; long waits check
    this before sleeping so they can fail cleanly instead of mid-write.
    """

    def __init__(self, timeout_seconds: float, safety_margin_seconds: float = 0.0) -> None:
        self._expires_at = time.monotonic() + max(0.0, timeout_seconds - safety_margin_seconds)

    def remaining_seconds(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining_seconds() <= 0


async def wait_for(
    emitter: Callable[[], Awaitable[T]],
    checker: Callable[[T, int], bool],
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    deadline: InvocationDeadline | None = None,
) -> T:
    """Call ``emitter`` until ``checker(result, attempt)`` is true.

    Raises WaitTimeoutError once ``max_attempts`` checks have failed, or when the
    next sleep would run past ``deadline``. Errors from ``emitter`` or
    ``checker`` propagate unchanged.
    """
    if interval_seconds <= 0:
        interval_seconds = DEFAULT_INTERVAL_SECONDS
    attempt = 0
    while True:
        result = await emitter()
        attempt += 1
        if checker(result, attempt):
            logger.debug("Condition check passed after %d attempt(s).", attempt)
            return result
        if attempt >= max_attempts:
            raise WaitTimeoutError(f"It reached the maximum amount ({max_attempts}) of attempts.")
        if deadline is not None and deadline.remaining_seconds() < interval_seconds:
            raise WaitTimeoutError(
                "Not enough execution time remaining to keep waiting "
                f"({deadline.remaining_seconds():.1f}s left, attempt {attempt})."
            )
        logger.info(
            "Condition check not passed, count: %d. Retry in %.1f s.", attempt, interval_seconds
        )
        await asyncio.sleep(interval_seconds)
