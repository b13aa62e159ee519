"""
Asyncio helpers shared by the matcher, tracker, executor and session adapter.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Union


async def gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """
    asyncio.gather that cancels the remaining siblings as soon as one raises,
    and waits for them to unwind before re-raising.
    """
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def acquire_within(primitive: Union[asyncio.Lock, asyncio.Semaphore], timeout: float) -> bool:
    """
    Acquire a Lock or Semaphore within `timeout` seconds.

    Returns False on timeout. The acquire runs in its own task so a timeout
    racing a grant never leaves the primitive held by nobody.
    """
    waiter = asyncio.ensure_future(primitive.acquire())
    try:
        done, _ = await asyncio.wait({waiter}, timeout=timeout)
    except asyncio.CancelledError:
        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        if not waiter.cancelled() and waiter.exception() is None:
            primitive.release()
        raise
    if done:
        waiter.result()
        return True
    waiter.cancel()
    await asyncio.gather(waiter, return_exceptions=True)
    if not waiter.cancelled() and waiter.exception() is None:
        # Granted between the timeout and the cancel
        primitive.release()
    return False
