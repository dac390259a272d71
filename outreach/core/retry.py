"""Retry helper for store write units that lose a unique-constraint race."""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from outreach.core.errors import StoreConflict
from outreach.observability.logging import get_logger

T = TypeVar("T")
log = get_logger("retry")


def _log_conflict(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log.warning(
        "store_conflict_retry",
        unit=getattr(state.fn, "__name__", "unit"),
        attempt=state.attempt_number,
        error=str(exc),
    )


async def retry_async(
    unit: Callable[[], Awaitable[T]],
    attempts: int = 2,
    jitter_s: float = 0.05,
) -> T:
    """
    Run `unit` again when it raises StoreConflict.

    The unit must open its own session, so a second attempt re-reads whatever
    row the competing writer created. Other exceptions propagate at once; the
    conflict itself is re-raised after the last attempt.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_random(0, jitter_s),
        retry=retry_if_exception_type(StoreConflict),
        before_sleep=_log_conflict,
        reraise=True,
    )
    return await retrying(unit)
