"""
Observable values - Current-value streams.

Each subscriber gets its own queue; new subscribers immediately receive the
current value. Used for verdict, loading indicator and catalog streams.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class ObservableValue(Generic[T]):
    """A value that can be read, replaced and observed."""

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._queues: set[asyncio.Queue[T]] = set()
        self._callbacks: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        """Replace the value and notify subscribers (unchanged values are not re-sent)."""
        if value == self._value:
            return
        self._value = value
        for queue in self._queues:
            queue.put_nowait(value)
        for callback in list(self._callbacks):
            callback(value)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a synchronous callback; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def updates(self) -> AsyncIterator[T]:
        """Yield the current value, then every subsequent change."""
        queue: asyncio.Queue[T] = asyncio.Queue()
        queue.put_nowait(self._value)
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)
