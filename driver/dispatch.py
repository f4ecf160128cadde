from __future__ import annotations
import asyncio
import inspect
from contextlib import suppress
from typing import Any, Callable, Iterable, List, Optional, Tuple

from shared.log import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]


class ListenerDispatcher:
    """
    Runs application callbacks on a task of its own.

    The ingestion loop only ever calls post(), which never blocks, so a slow
    listener delays later notifications but never protocol processing. Posts
    are delivered in order; each listener finishes before the next one starts.

    Coroutine functions run on the event loop and must not block it. Plain
    functions run in a worker thread (asyncio.to_thread), so a blocking
    callback stalls only later notifications.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[Tuple[List[Listener], Tuple[Any, ...]]]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="ddp-dispatch")

    def post(self, listeners: Iterable[Listener], *args: Any) -> None:
        snapshot = list(listeners)
        if snapshot:
            self._queue.put_nowait((snapshot, args))

    async def drain(self) -> None:
        """Wait until everything posted so far has been delivered."""
        await self._queue.join()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._queue.put_nowait(None)
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                listeners, args = item
                for listener in listeners:
                    await self._call(listener, args)
            finally:
                self._queue.task_done()

    @staticmethod
    async def _call(listener: Listener, args: Tuple[Any, ...]) -> None:
        try:
            if inspect.iscoroutinefunction(listener):
                await listener(*args)
                return
            result = await asyncio.to_thread(listener, *args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Listener %s failed: %s", getattr(listener, "__name__", listener), e)
