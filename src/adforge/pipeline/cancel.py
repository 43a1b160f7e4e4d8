from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from adforge.errors import PipelineCancelled

T = TypeVar("T")


async def run_cancellable(aw: Awaitable[T], cancel: asyncio.Event | None, what: str) -> T:
    """Await `aw`, abandoning it as soon as the request's cancel event is set."""
    if cancel is None:
        return await aw
    if cancel.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise PipelineCancelled(f"cancelled before {what}")

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task.cancelled():
        raise PipelineCancelled(f"cancelled during {what}")
    return task.result()
