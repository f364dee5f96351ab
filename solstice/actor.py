"""Single-writer update queue.

State owned by a service (the merged conversation list, the current feed) is
only mutated by callables executed here, one at a time and in submission
order, so listener callbacks and user actions never interleave mid-update.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Tuple

LOGGER = logging.getLogger(__name__)

_Job = Tuple[Callable[..., Any], Tuple[Any, ...], "asyncio.Future[Any]"]


class SerialExecutor:
    def __init__(self, name: str = "serial") -> None:
        self._name = name
        self._queue: "Optional[asyncio.Queue[_Job]]" = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name=f"{self._name}-executor")

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while self._task is asyncio.current_task():
            fn, args, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                result = fn(*args)
                if inspect.isawaitable(result):
                    result = await result
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            finally:
                queue.task_done()

    def submit(self, fn: Callable[..., Any], *args: Any) -> "asyncio.Future[Any]":
        """Queue ``fn(*args)``; the returned future resolves with its result."""
        if not self.running:
            self.start()
        assert self._queue is not None
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((fn, args, future))
        return future

    async def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await self.submit(fn, *args)

    async def drain(self) -> None:
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self) -> None:
        task, queue = self._task, self._queue
        self._task = None
        self._queue = None
        if task is None:
            return
        if asyncio.current_task() is not task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if queue is not None:
            while not queue.empty():
                _fn, _args, future = queue.get_nowait()
                if not future.done():
                    future.cancel()
                queue.task_done()
        LOGGER.debug("Executor %s stopped", self._name)


__all__ = ["SerialExecutor"]
