from __future__ import annotations

import asyncio
from logging import Logger, getLogger
from typing import AsyncIterator, Callable, Generic, List, Optional, TypeVar

from config import STREAM_BUFFER_SIZE
from voicestream.errors import SessionClosedError


logger = getLogger(__name__)

T = TypeVar("T")


class EventStream(Generic[T]):
    """
    Consumer-facing stream of session events.

    Backed by a bounded ``asyncio.Queue``: ``put`` waits while the consumer is
    behind. ``close`` shuts the queue down; readers drain what was already
    delivered and then see the end of the iteration, blocked writers get
    SessionClosedError. Iterate with ``async for``.
    """

    def __init__(self, name: str, maxsize: int = STREAM_BUFFER_SIZE) -> None:
        self.name = name
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: T) -> None:
        try:
            await self._queue.put(item)
        except asyncio.QueueShutDown:
            raise SessionClosedError(f"{self.name} stream is closed") from None

    def put_nowait(self, item: T, *, evict: bool = False) -> bool:
        """
        Deliver without waiting. Returns False when the item was dropped
        because the stream is closed or full. With evict=True the oldest
        buffered item makes room instead.
        """
        if self._closed:
            return False
        if self._queue.full():
            if not evict:
                return False
            dropped = self._queue.get_nowait()
            logger.warning("[WS] %s stream full, evicted %r", self.name, dropped)
        self._queue.put_nowait(item)
        return True

    async def get(self) -> T:
        """Next event. Raises SessionClosedError once closed and drained."""
        try:
            return await self._queue.get()
        except asyncio.QueueShutDown:
            raise SessionClosedError(f"{self.name} stream is closed") from None

    def close(self) -> bool:
        """Close the stream. Returns False if it was already closed."""
        if self._closed:
            return False
        self._closed = True
        self._queue.shutdown()
        return True

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self._queue.get()
        except asyncio.QueueShutDown:
            raise StopAsyncIteration from None

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<EventStream {self.name} {state} buffered={self.qsize()}>"


class StreamContext:
    """
    Cancellation signal and logging sink handed to a session.

    ``cancel()`` runs the registered callbacks synchronously, once. Use it
    from the event loop thread only.
    """

    def __init__(self, logger: Optional[Logger] = None) -> None:
        self.logger = logger
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove
