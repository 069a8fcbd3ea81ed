"""
Timer and background task bookkeeping for a single editing session.

Timers are keyed by (workflow key, name) so they can be re-keyed when a
temporary workflow id is migrated, and cancelled all at once when the
session is disposed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[object]]


class TimerRegistry:
    def __init__(self) -> None:
        self._timers: Dict[Tuple[str, str], asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    def schedule(self, workflow_key: str, name: str, delay: float, callback: TimerCallback) -> asyncio.Task:
        """Run ``callback`` after ``delay`` seconds, replacing any pending timer of the same key."""
        if self._closed:
            raise RuntimeError("Timer registry is closed")
        self.cancel(workflow_key, name)
        task = asyncio.create_task(self._fire(delay, callback), name=f"timer:{name}")
        self._timers[(workflow_key, name)] = task
        return task

    async def _fire(self, delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        for key, task in list(self._timers.items()):
            if task is current:
                del self._timers[key]
        # Keep the fired callback visible to settle()/close()
        if current is not None:
            self._track(current)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer callback failed")

    def cancel(self, workflow_key: str, name: str) -> bool:
        task = self._timers.pop((workflow_key, name), None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_prefix(self, workflow_key: str, prefix: str) -> int:
        names = [name for key, name in self._timers if key == workflow_key and name.startswith(prefix)]
        for name in names:
            self.cancel(workflow_key, name)
        return len(names)

    def is_pending(self, workflow_key: str, name: str) -> bool:
        return (workflow_key, name) in self._timers

    def pending(self, workflow_key: Optional[str] = None) -> List[str]:
        return [name for key, name in self._timers if workflow_key is None or key == workflow_key]

    def rekey(self, old_key: str, new_key: str) -> int:
        moved = 0
        for key, name in list(self._timers):
            if key != old_key:
                continue
            self._timers[(new_key, name)] = self._timers.pop((key, name))
            moved += 1
        return moved

    def spawn(self, coro: Awaitable[object], name: Optional[str] = None) -> asyncio.Task:
        """Start a tracked background task."""
        if self._closed:
            raise RuntimeError("Timer registry is closed")
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self, exclude: Iterable[str] = ()) -> None:
        """Wait until no timer or background task is outstanding, ignoring timers named in ``exclude``."""
        skipped = set(exclude)
        while True:
            timers = [task for (_, name), task in self._timers.items() if name not in skipped]
            outstanding = [task for task in (*timers, *self._tasks) if not task.done()]
            current = asyncio.current_task()
            outstanding = [task for task in outstanding if task is not current]
            if not outstanding:
                return
            await asyncio.gather(*outstanding, return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        tasks = [*self._timers.values(), *self._tasks]
        self._timers.clear()
        current = asyncio.current_task()
        tasks = [task for task in tasks if task is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class DebouncedTimer:
    """
    Restartable timer: every ``trigger()`` pushes the deadline out by
    ``delay`` so a burst of triggers runs ``callback`` once.
    """

    def __init__(
        self,
        registry: TimerRegistry,
        name: str,
        delay: float,
        callback: TimerCallback,
        key: Callable[[], str],
    ) -> None:
        self._registry = registry
        self._name = name
        self._delay = delay
        self._callback = callback
        self._key = key

    @property
    def pending(self) -> bool:
        return self._registry.is_pending(self._key(), self._name)

    def trigger(self) -> None:
        self._registry.schedule(self._key(), self._name, self._delay, self._callback)

    def cancel(self) -> bool:
        return self._registry.cancel(self._key(), self._name)
