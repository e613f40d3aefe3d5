"""
SingleFlight - at most one in-flight call per key; concurrent callers for the
same key share its result.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class SingleFlight:
    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def in_flight(self, key: Hashable) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def do(self, key: Hashable, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run `func` for `key` unless a call is already running, in which case
        wait for that call instead. A waiter being cancelled does not cancel
        the shared call.
        """
        async with self._lock:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(func())
                self._inflight[key] = task
                task.add_done_callback(lambda done, key=key: self._release(key, done))
            else:
                logger.debug(f"Joining in-flight request for {key}")
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"In-flight request for {key} failed: {task.exception()}")

    def forget(self, key: Hashable) -> None:
        """Detach the in-flight call for `key`; the next caller starts a new one."""
        self._inflight.pop(key, None)

    async def wait(self, key: Hashable) -> None:
        """Wait for the in-flight call for `key`, if any, ignoring its outcome."""
        task = self._inflight.get(key)
        if task is not None and not task.done():
            await asyncio.wait({task})
