"""
Scheduler
==========

Deferred continuations for paced sends. The orchestrator never calls
loop.call_later or asyncio.sleep directly; it goes through a Scheduler so
tests can drive a virtual clock instead of waiting on wall time.

  after(delay, fn)  → run coroutine function `fn` after `delay` seconds
  sleep(seconds)    → suspend the current coroutine
  now()             → current clock reading (seconds)
  cancel_all()      → drop every pending continuation (best effort)
"""

import time
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Set

logger = logging.getLogger(__name__)

Continuation = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    def after(self, delay: float, fn: Continuation) -> "ScheduledHandle": ...

    async def sleep(self, seconds: float) -> None: ...

    def now(self) -> float: ...

    def cancel_all(self) -> None: ...


class ScheduledHandle(Protocol):
    def cancel(self) -> None: ...


class _LoopHandle:
    def __init__(self, scheduler: "LoopScheduler"):
        self._scheduler = scheduler
        self.timer: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False

    def cancel(self):
        self.cancelled = True
        if self.timer:
            self.timer.cancel()
        self._scheduler._handles.discard(self)


class LoopScheduler:
    """Real-time scheduler on the running asyncio loop (call_later + create_task)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._handles: Set[_LoopHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def after(self, delay: float, fn: Continuation) -> _LoopHandle:
        handle = _LoopHandle(self)

        def _fire():
            self._handles.discard(handle)
            if handle.cancelled:
                return
            task = self.loop.create_task(self._run(fn))
            handle.task = task
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle.timer = self.loop.call_later(max(0.0, delay), _fire)
        self._handles.add(handle)
        return handle

    async def _run(self, fn: Continuation):
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Continuations handle their own errors; this is the last line
            logger.error(f"[Scheduler] Unhandled error in continuation: {e}", exc_info=True)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    def now(self) -> float:
        return time.time()

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    @property
    def pending(self) -> int:
        return len(self._handles)
