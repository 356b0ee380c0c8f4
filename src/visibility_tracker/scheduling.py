from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    # Every callback, including submit continuations, runs on the loop thread.
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def submit(
        self,
        fn: Callable[[], T],
        on_result: Callable[[T], None],
        on_error: Callable[[BaseException], None],
    ) -> None: ...


class AsyncioScheduler:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self.loop = loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)

    def submit(
        self,
        fn: Callable[[], T],
        on_result: Callable[[T], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        future = self.loop.run_in_executor(None, fn)

        def _deliver(done: asyncio.Future[Any]) -> None:
            if done.cancelled():
                logger.debug("submitted call was cancelled")
                return
            exc = done.exception()
            if exc is not None:
                on_error(exc)
            else:
                on_result(done.result())

        future.add_done_callback(_deliver)
