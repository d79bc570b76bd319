"""
Scheduling primitives - Managed task scope and single-slot delayed task.

Every background task belongs to a TaskScope so teardown can cancel the
whole set at once.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Protocol, TypeVar

from structlog import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TaskScope:
    """Owns a set of asyncio tasks and cancels them together on close."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, T], name: str | None = None) -> asyncio.Task[T]:
        """Start a task inside the scope. Unhandled task errors are logged."""
        if self._closed:
            coro.close()
            raise RuntimeError(f"Task scope {self.name} is closed")

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "scoped_task_failed",
                scope=self.name,
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def close(self) -> None:
        """Cancel every task and wait for them to unwind."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("task_scope_closed", scope=self.name, cancelled=len(tasks))


class Timer(Protocol):
    """Single-slot delayed action."""

    def schedule(self, delay: float, action: Callable[[], Awaitable[None]]) -> None: ...

    def cancel(self) -> None: ...

    @property
    def pending(self) -> bool: ...


class DelayedTask:
    """
    Single-slot delayed action.

    Scheduling replaces (cancels) any previously scheduled action, so at most
    one action is ever pending.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(delay, action), name=self.name)

    async def _run(self, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        # A fired action is no longer pending; it may cancel or reschedule the slot
        if self._task is asyncio.current_task():
            self._task = None
        try:
            await action()
        except Exception as exc:
            logger.error("delayed_task_failed", task=self.name, error=str(exc))

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
