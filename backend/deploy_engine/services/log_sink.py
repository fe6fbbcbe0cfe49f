from __future__ import annotations

import asyncio
from pathlib import Path
from typing import BinaryIO

DEFAULT_SUBSCRIBER_BUFFER = 64


class LogSubscription:
    """A live view on a LogSink.

    Iterate with ``async for chunk in subscription``; iteration ends when the
    sink is closed or the subscription is removed.
    """

    def __init__(self, maxsize: int = DEFAULT_SUBSCRIBER_BUFFER):
        self.queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, chunk: bytes) -> bool:
        """Enqueue without waiting; returns False when the chunk was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(chunk)
        except asyncio.QueueFull:
            return False
        return True

    def finish(self) -> None:
        if self.closed:
            return
        self.closed = True
        # The end marker must always land, even at the cost of the oldest chunk.
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    def __aiter__(self) -> LogSubscription:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.queue.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk


class LogSink:
    """Writes build output to a file and broadcasts it to live subscribers.

    Writes never wait on subscribers: a reader whose buffer is full simply
    misses that chunk. All methods are called from the event loop thread.
    """

    def __init__(self, path: Path | None = None, buffer_size: int = DEFAULT_SUBSCRIBER_BUFFER):
        self.path = path
        self._buffer_size = buffer_size
        self._file: BinaryIO | None = None
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._file = path.open("wb")
        self._subscribers: list[LogSubscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed log sink")
        if self._file is not None:
            self._file.write(data)
            self._file.flush()

        chunk = bytes(data)
        for subscription in self._subscribers:
            subscription.offer(chunk)
        return len(data)

    def write_line(self, text: str = "") -> None:
        self.write(f"{text}\n".encode())

    def subscribe(self) -> LogSubscription:
        subscription = LogSubscription(self._buffer_size)
        if self._closed:
            subscription.finish()
            return subscription
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: LogSubscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:  # already removed or closed
            return
        subscription.finish()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription.finish()
        self._subscribers = []
        if self._file is not None:
            self._file.close()
            self._file = None
