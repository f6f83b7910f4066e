import asyncio
import inspect
import logging
from typing import Any, Callable, Hashable

logger = logging.getLogger(__name__)


class KeyedTimers:
    """Cancellable one-shot delayed callbacks on the running event loop, keyed by id.

    Scheduling an existing key replaces (cancels) the pending timer. A timer's
    key is released just before its callback runs, so the callback may
    schedule the same key again.
    """

    def __init__(self):
        self._tasks: dict[Hashable, asyncio.Task] = {}

    def schedule(self, key: Hashable, delay: float, callback: Callable[[], Any]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._fire(key, float(delay), callback))
        self._tasks[key] = task
        return task

    def cancel(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def pending(self, key: Hashable) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def _fire(self, key: Hashable, delay: float, callback: Callable[[], Any]) -> None:
        await asyncio.sleep(max(0.0, delay))
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer callback for %r failed", key)
