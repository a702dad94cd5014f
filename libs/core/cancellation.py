from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import RequestCancelledError

T = TypeVar("T")


def is_cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if is_cancelled(cancel_event):
        raise RequestCancelledError()


async def run_cancellable(
    awaitable: Awaitable[T],
    cancel_event: Optional[asyncio.Event],
    timeout_s: float | None = None,
) -> T:
    """Await ``awaitable`` until it finishes, the event fires or the timeout elapses.

    Raises ``RequestCancelledError`` when the event wins and
    ``asyncio.TimeoutError`` when the timeout does. The losing work is
    cancelled before returning.
    """
    raise_if_cancelled(cancel_event)
    work = asyncio.ensure_future(awaitable)
    waiters = {work}
    cancel_wait: Optional[asyncio.Future] = None
    if cancel_event is not None:
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_wait)
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
    if work in done:
        return work.result()
    work.cancel()
    if is_cancelled(cancel_event):
        raise RequestCancelledError()
    raise asyncio.TimeoutError(f"timed out after {timeout_s}s")
