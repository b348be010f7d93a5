"""DeferredQueue: FIFO zero-delay task queue for work scheduled from sync code."""

from __future__ import annotations

import logging
import math
from typing import Any, Callable

import anyio

logger = logging.getLogger(__name__)


Task = Callable[[], Any]


class DeferredQueue:
    """Runs callables after the current synchronous call stack has unwound.

    Tasks are queued with :meth:`call_soon` and executed strictly in the order
    they were queued, either by :meth:`run` inside a task group or by an
    explicit :meth:`run_pending` drain.
    """

    def __init__(self) -> None:
        self._send, self._recv = anyio.create_memory_object_stream[Task](math.inf)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._closed:
            logger.debug("dropping deferred task because the queue is closed")
            return
        if args:
            self._send.send_nowait(lambda: fn(*args))
        else:
            self._send.send_nowait(fn)

    def _invoke(self, task: Task) -> None:
        try:
            task()
        except Exception:
            logger.exception("deferred task failed")

    def run_pending(self) -> int:
        """Run queued tasks until the queue is empty; return how many ran."""
        count = 0
        while not self._closed:
            try:
                task = self._recv.receive_nowait()
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                break
            self._invoke(task)
            count += 1
        return count

    async def run(self, *, task_status: anyio.abc.TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        """Continuously execute queued tasks until the queue is closed."""
        task_status.started()
        try:
            async for task in self._recv:
                if self._closed:
                    break
                self._invoke(task)
        except anyio.ClosedResourceError:
            pass

    def close(self) -> None:
        """Drop every queued task and stop accepting new ones."""
        if self._closed:
            return
        self._closed = True
        self._send.close()
        while True:
            try:
                self._recv.receive_nowait()
            except (anyio.WouldBlock, anyio.EndOfStream, anyio.ClosedResourceError):
                break
        self._recv.close()
