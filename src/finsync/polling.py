"""
Bounded polling with jittered delays.

Used for decoupled MFA approval and for browser login waits, where the only
way to learn about progress is to ask again.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, TypeVar

from finsync.errors import OperationTimeoutError

logger = logging.getLogger("finsync.polling")

T = TypeVar("T")


def jittered(base: float, jitter: float) -> float:
    """Return ``base`` plus a uniform random offset in ``[0, jitter]``."""
    return base + random.uniform(0, jitter) if jitter > 0 else base


async def poll_until(
    check: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    *,
    interval: float,
    timeout: float,
    jitter: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``check`` until ``is_done`` accepts its result or ``timeout`` elapses.

    The first check runs immediately. Between checks the loop sleeps for
    ``interval`` plus up to ``jitter`` seconds.

    Raises:
        OperationTimeoutError: If no accepted result arrived in time.
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        value = await check()
        if is_done(value):
            logger.debug("Polling finished after %d attempt(s)", attempt)
            return value

        remaining = deadline - clock()
        if remaining <= 0:
            raise OperationTimeoutError(f"Gave up after {attempt} attempt(s) in {timeout:.0f}s")
        await sleep(min(jittered(interval, jitter), remaining))
