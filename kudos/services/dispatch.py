"""
kudos.services.dispatch — Serialized, spaced dispatch queue
============================================================

The gamification API enforces a strict per-call rate limit and has no
idempotency of its own.  Every outbound call therefore goes through one
FIFO queue with a single consumer:

* tasks start strictly in submission order;
* consecutive task starts are at least ``min_interval_seconds`` apart;
* a failing task never blocks the tasks behind it.

``submit()`` is synchronous: the position in the queue is fixed at call
time, which lets the ledger enqueue a whole fan-out before writing its
snapshot.  ``enqueue()`` submits and awaits.  The ``*_safe`` variants log
and swallow failures (returning ``None``) and report them to
``on_failure`` so the pipeline can dead-letter them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

QueueTask = Callable[[], Awaitable[T]]
FailureHook = Callable[[str, BaseException], None]

__all__ = ["DispatchQueue", "QueueTask"]


class DispatchQueue:
    """FIFO queue with one consumer task per event loop."""

    def __init__(
        self,
        min_interval_seconds: float = 0.3,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_failure: FailureHook | None = None,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self.on_failure = on_failure
        self._clock = clock
        self._last_start: float | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None

    # -----------------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------------
    def submit(self, task: QueueTask[T]) -> asyncio.Future:
        """Queue *task* and return a future for its result.

        Must be called from inside a running event loop.
        """
        queue = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue.put_nowait((task, future))
        return future

    async def enqueue(self, task: QueueTask[T]) -> T:
        """Queue *task* and wait for its result (exceptions propagate)."""
        return await self.submit(task)

    def submit_safe(
        self,
        task: QueueTask[T],
        label: str = "",
        on_failure: FailureHook | None = None,
    ) -> asyncio.Future:
        """Like :meth:`submit`, but the future resolves to ``None`` on failure.

        *on_failure* overrides the queue-wide hook for this task.
        """
        hook = on_failure or self.on_failure

        async def guarded() -> Any:
            try:
                return await task()
            except Exception as exc:
                logger.error("Dispatch %s suppressed: %s", label or "task", exc)
                if hook is not None:
                    try:
                        hook(label, exc)
                    except Exception:
                        logger.exception("Dispatch failure hook raised")
                return None

        return self.submit(guarded)

    async def safe_dispatch(
        self, task: QueueTask[T], label: str = "", on_failure: FailureHook | None = None
    ) -> T | None:
        return await self.submit_safe(task, label, on_failure)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------
    async def join(self) -> None:
        """Wait until every queued task has finished."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the consumer task (queued tasks are dropped)."""
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._queue = None
        self._loop = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_worker(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._queue is None:
            self._loop = loop
            self._queue = asyncio.Queue()
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._consume(self._queue))
        return self._queue

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            task, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                if self._last_start is not None:
                    wait = self._last_start + self.min_interval_seconds - self._clock()
                    if wait > 0:
                        await asyncio.sleep(wait)
                self._last_start = self._clock()
                try:
                    result = await task()
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()
