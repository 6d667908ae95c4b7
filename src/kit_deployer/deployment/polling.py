"""Polling primitives shared by the dependency and readiness waits.

Every wait here is bounded by a hard timeout and releases its timers on
every exit path.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from .models import InfoCallback

T = TypeVar("T")


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    *,
    interval: float,
    timeout: float,
    timeout_error: Callable[[], Exception],
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Call ``fetch`` every ``interval`` seconds until ``predicate`` accepts.

    The timeout is independent of the number of attempts: whatever attempt
    is in flight when it expires is cancelled.

    Args:
        fetch: Coroutine factory producing the observed state
        predicate: Returns True once the observed state is acceptable
        interval: Seconds to wait between attempts
        timeout: Seconds before giving up
        timeout_error: Factory for the exception raised on timeout
        retry_on: Exceptions from ``fetch`` that are retried after ``interval``

    Returns:
        The first observed state accepted by ``predicate``
    """
    try:
        async with asyncio.timeout(timeout):
            while True:
                try:
                    result = await fetch()
                except retry_on as e:
                    logger.debug(f"Poll attempt failed, retrying in {interval}s: {e}")
                else:
                    if predicate(result):
                        return result
                await asyncio.sleep(interval)
    except TimeoutError:
        raise timeout_error() from None


class KeepAlive:
    """Report a message at a fixed interval until stopped.

    Example:
        ```python
        async with KeepAlive("Still waiting...", 30, on_info):
            await something_slow()
        ```
    """

    def __init__(self, message: str, interval: float, on_info: InfoCallback) -> None:
        self.message = message
        self.interval = interval
        self._on_info = on_info
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._on_info(self.message)

    async def __aenter__(self) -> KeepAlive:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.stop()
