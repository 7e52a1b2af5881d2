from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable

from utils.result import Result

log = logging.getLogger(__name__)

DEFAULT_AI_TIMEOUT_MS = 60_000


class RunTimeoutError(TimeoutError):
    """Raised (as a `Result` error) when a guarded operation misses its deadline."""

    def __init__(self, timeout_ms: float):
        super().__init__(f"AI run timed out after {timeout_ms:g}ms")
        self.timeout_ms = timeout_ms


def is_positive_finite(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def _discard_outcome(task: "asyncio.Future[Any]") -> None:
    # Nobody awaits an abandoned operation; retrieve its exception so the
    # loop does not report it as never retrieved.
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("[TIMEOUT] abandoned operation failed late: %r", exc)


async def with_timeout(operation: Awaitable[Any], timeout_ms: Any) -> Result[Any]:
    """
    Race `operation` against a deadline of `timeout_ms` milliseconds.

    Returns the operation's value, or its exception as a failure, if it
    settles first; `RunTimeoutError` as a failure if the deadline fires
    first. The operation is not cancelled on timeout, it keeps running in
    the background and its outcome is dropped. A deadline that is not a
    positive finite number disables the guard.
    """
    if not is_positive_finite(timeout_ms):
        try:
            return Result.success(await operation)
        except Exception as exc:
            return Result.failure(exc)

    task = asyncio.ensure_future(operation)
    try:
        # asyncio.wait arms one timer and cancels it on every exit path.
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        task.add_done_callback(_discard_outcome)
        raise

    if not done:
        task.add_done_callback(_discard_outcome)
        return Result.failure(RunTimeoutError(timeout_ms))

    if task.cancelled():
        return Result.failure(asyncio.CancelledError())
    exc = task.exception()
    if exc is not None:
        return Result.failure(exc)
    return Result.success(task.result())
