"""
Timer facility for the loop scheduler, pane monitor and debounce controller.

Everything runs on a single asyncio event loop. Work is armed as one-shot
timers (call_later) whose callbacks spawn coroutines; there are no threads.

Usage:
    timers = Timers()
    handle = timers.call_later(30, lambda: timers.spawn(do_work()))
    handle.cancel()
    await timers.drain()   # wait for in-flight work
"""

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """Anything with cancel() - asyncio.TimerHandle satisfies this."""

    def cancel(self) -> None:
        ...


class Timers:
    """One-shot timers plus tracking of the tasks they spawn."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run callback after delay seconds (negative delays fire immediately)."""
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback)

    def spawn(self, coro: Awaitable) -> asyncio.Task:
        """Schedule a coroutine on the running loop and track it until done."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            # Spawned work is expected to handle its own errors
            logger.error("Unhandled error in background task: %r", task.exception())

    async def drain(self):
        """Wait until every spawned task (including ones spawned meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

