"""
Timer primitives used by animations and notification coalescing.

Both primitives run on the asyncio loop of the caller; nothing here owns a
thread.  The sleep function of :class:`TickLoop` is injectable so tests can
drive animations without waiting for wall-clock time.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from .geometry import path_steps

LOG = logging.getLogger(__name__)

SleepCallable = Callable[[float], Awaitable[Any]]
StepCallable = Callable[[], Any]
FinishCallable = Callable[[bool], Any]


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class TickLoop:
    """
    Cancellable periodic tick with a guaranteed single finish callback.

    ``step`` runs once per time slice, ``duration_ms / (1000 / fps)`` times.
    ``finish(cancelled)`` runs exactly once afterwards, whether the loop ran
    to completion, was cancelled cooperatively, or a step failed.
    """

    def __init__(
        self,
        step: StepCallable,
        finish: FinishCallable,
        *,
        duration_ms: float = 1000.0,
        fps: float = 60.0,
        sleep: SleepCallable = asyncio.sleep,
        name: str = "tick-loop",
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.name = name
        self.steps = path_steps(fps, duration_ms)
        self.interval = 1.0 / float(fps)
        self._step = step
        self._finish = finish
        self._sleep = sleep
        self._cancelled = False
        self._finished = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> "TickLoop":
        if self._task is not None:
            raise RuntimeError(f"tick loop {self.name} already started")
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        self._cancelled = True

    async def wait(self) -> bool:
        """Wait for the loop (including its finish callback); True if it completed."""

        if self._task is None:
            raise RuntimeError(f"tick loop {self.name} not started")
        return await asyncio.shield(self._task)

    async def _run(self) -> bool:
        completed = False
        try:
            remaining = self.steps
            while remaining > 0 and not self._cancelled:
                remaining -= 1
                await _maybe_await(self._step())
                await self._sleep(self.interval)
            completed = not self._cancelled
        except asyncio.CancelledError:
            self._cancelled = True
            raise
        except Exception:
            LOG.exception("Tick loop %s step failed", self.name)
        finally:
            await self._finish_once(not completed)
        return completed

    async def _finish_once(self, cancelled: bool) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            await _maybe_await(self._finish(cancelled))
        except Exception:
            LOG.exception("Tick loop %s finish handler failed", self.name)


class Debouncer:
    """
    Single pending timer around ``callback``.

    ``trigger()`` arms the timer unless it is already pending, so calls within
    one window coalesce into one callback.  ``trigger(restart=True)`` pushes
    the deadline out instead (trailing debounce).
    """

    def __init__(self, callback: Callable[[], Any], window: float, *, name: str = "debounce") -> None:
        self.name = name
        self.window = max(0.0, float(window))
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self, *, restart: bool = False) -> None:
        if self._handle is not None:
            if not restart:
                return
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.window, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> None:
        """Fire a pending timer immediately and wait for the callback."""

        if self._handle is None:
            return
        self.cancel()
        await _maybe_await(self._callback())

    async def drain(self) -> None:
        """Wait for callbacks already dispatched by the timer."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        try:
            result = self._callback()
        except Exception:
            LOG.exception("Debounced callback %s failed", self.name)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Debounced callback %s failed", self.name, exc_info=exc)
