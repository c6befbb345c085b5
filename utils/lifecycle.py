"""Shared background asyncio loop plus small sync/async lifecycle helpers.

The HMI web server and the TCP trigger both live on one loop thread; the rest
of the booth is plain threads, so everything here is a sync bridge.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections.abc import Coroutine
from concurrent.futures import TimeoutError
from typing import Any, Callable, TypeVar

L = logging.getLogger("snapbooth.loop")

T = TypeVar("T")


class LoopRunner:
    """Lazily starts one daemon asyncio loop and runs coroutines on it from sync code."""

    def __init__(self, *, name: str = "snapbooth-async", logger: logging.Logger | None = None):
        self.name = name
        self._logger = logger or L
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._thread_ident: int | None = None
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._stopped:
                raise RuntimeError("Async loop already stopped")
            if self._loop is not None and self.running:
                return self._loop
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _run():
                asyncio.set_event_loop(loop)
                self._thread_ident = threading.get_ident()
                ready.set()
                loop.run_forever()

            self._loop = loop
            self._thread = threading.Thread(target=_run, name=self.name, daemon=True)
            self._thread.start()
            ready.wait(timeout=0.5)
            self._logger.debug("%s loop started", self.name)
            return loop

    def _on_loop_thread(self) -> bool:
        return self._thread_ident is not None and threading.get_ident() == self._thread_ident

    def run_async(self, coro: Coroutine[Any, Any, T], timeout: float | None = 0.5) -> T:
        """Run `coro` on the loop and block for its result; never call from the loop thread."""
        loop = self._ensure_loop()
        if self._on_loop_thread():
            coro.close()
            raise RuntimeError("run_async must not be called from the loop thread; await directly")
        fut = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return fut.result(timeout=timeout)
        except TimeoutError:
            fut.cancel()
            self._logger.warning("%s run_async timeout after %.2fs", self.name, timeout or 0)
            raise

    def shutdown_loop(self, timeout: float = 1.0):
        """Cancel whatever is still pending, stop the loop and join its thread."""
        if self._on_loop_thread():
            raise RuntimeError("shutdown_loop must not be called from the loop thread")
        with self._lock:
            self._stopped = True
            loop, thread = self._loop, self._thread
        if loop is None or thread is None or loop.is_closed():
            return

        async def _cancel_pending():
            current = asyncio.current_task()
            pending = [t for t in asyncio.all_tasks() if t is not current and not t.done()]
            self._logger.debug(
                "%s shutdown pending_tasks=%d %s",
                self.name,
                len(pending),
                ", ".join(t.get_name() for t in pending[:10]),
            )
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await loop.shutdown_asyncgens()

        fut = asyncio.run_coroutine_threadsafe(_cancel_pending(), loop)
        try:
            fut.result(timeout=timeout)
        except TimeoutError:
            fut.cancel()
            raise
        finally:
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=timeout)
            if thread.is_alive():
                self._logger.warning(
                    "%s thread did not exit within %.2fs; loop left open", self.name, timeout
                )
            else:
                loop.close()
                self._loop = None
                self._thread = None
                self._thread_ident = None


class AsyncTaskOwner:
    """Tracks the long-running tasks a service spawned so stop() can cancel them."""

    def __init__(self, *, loop_runner: LoopRunner, owner_name: str = "async_service"):
        self._owner_name = owner_name
        self._loop_runner = loop_runner
        self._tasks: list[asyncio.Task[Any]] = []

    @property
    def loop_runner(self) -> LoopRunner:
        return self._loop_runner

    def register(self, task: asyncio.Task[Any] | None):
        if task is not None:
            self._tasks.append(task)
        return task

    def cancel_all(self):
        tasks, self._tasks = self._tasks, []
        if tasks:
            L.debug("%s cancelling %d task(s)", self._owner_name, len(tasks))
        for task in tasks:
            # Task.cancel is not thread-safe; hop onto the owning loop.
            task.get_loop().call_soon_threadsafe(task.cancel)


def run_async_cleanup(
    coro: Coroutine[Any, Any, Any],
    *,
    loop_runner: LoopRunner,
    timeout: float = 0.5,
):
    """Best-effort async teardown from sync code; a timeout is logged, not raised."""
    try:
        loop_runner.run_async(coro, timeout=timeout)
    except TimeoutError:
        L.warning("async cleanup did not finish within %.2fs", timeout)


def drain_queue_nowait(
    q: queue.Queue,
    *,
    on_item: Callable[[Any], None] | None = None,
) -> int:
    """Pop everything currently queued, calling `task_done()` for each item."""
    drained = 0
    while True:
        try:
            item = q.get_nowait()
        except queue.Empty:
            return drained
        try:
            if on_item is not None:
                on_item(item)
        finally:
            q.task_done()
        drained += 1


__all__ = [
    "AsyncTaskOwner",
    "LoopRunner",
    "drain_queue_nowait",
    "run_async_cleanup",
]
