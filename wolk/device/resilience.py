"""Background execution helpers.

Provides:
- ``SerialWorker``: per-component FIFO worker for outbound callbacks
- ``supervised_task``: create_task wrapper with error logging
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger


# ---------------------------------------------------------------------------
# Serial worker: one callback at a time, in submission order
# ---------------------------------------------------------------------------

class SerialWorker:
    """Runs submitted callables one after another on a single async task.

    Each owner (one transfer session, for instance) gets its own worker, so
    unrelated owners never wait on each other. A callable may be sync or
    async; exceptions are logged, not propagated, and do not stop the worker.

    Parameters
    ----------
    name:
        Human-readable label for logging.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[tuple[Callable[..., Any], tuple[Any, ...]]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """Queue ``fn(*args)``; starts the worker task on first use."""
        if self._closed:
            logger.warning("[Worker/{}] closed, dropping {}", self.name, getattr(fn, "__name__", fn))
            return
        self._queue.put_nowait((fn, args))
        if self._task is None or self._task.done():
            self._task = supervised_task(self._loop(), name=f"worker-{self.name}")

    async def _loop(self) -> None:
        # Exits once the queue is drained; submit() starts a new task.
        while not self._queue.empty():
            fn, args = self._queue.get_nowait()
            try:
                result = fn(*args)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "[Worker/{}] callback {} raised: {!r}",
                    self.name, getattr(fn, "__name__", fn), exc,
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted callable has finished."""
        await self._queue.join()

    def close(self) -> None:
        """Stop the worker and discard anything still queued."""
        self._closed = True
        running = self._task is not None and not self._task.done()
        if running and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


# ---------------------------------------------------------------------------
# Supervised task: create_task with error logging
# ---------------------------------------------------------------------------

def supervised_task(
    coro: Awaitable[Any],
    *,
    name: str = "",
) -> asyncio.Task:
    """Wrap ``asyncio.create_task`` with an error-logging callback.

    If the task raises an exception (other than ``CancelledError``),
    it is logged as an error instead of becoming an unhandled exception.
    """
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "[Task] supervised task {!r} failed: {!r}",
                t.get_name(), exc,
            )

    task.add_done_callback(_on_done)
    return task
