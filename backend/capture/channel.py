"""
Bounded push channel for captured frames.

One channel per consumer. The supervisor's reader task awaits send() for
every open channel, so a full channel slows the reader down instead of
growing memory (capacity-based backpressure).

Usage example:

    channel = supervisor.subscribe()
    async for frame in channel:
        ...

A consumer that stops early must call close(drop_pending=True) so the
reader is never left waiting on it.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from audio.frames import AudioFrame
from spec import FRAME_CHANNEL_CAPACITY


class ChannelClosed(Exception):
    """Raised by send() once the channel has been closed."""


class FrameChannel:
    """
    Bounded FIFO between one producer and one consumer.

    Ordering: frames are received in exactly the order they were sent.
    """

    def __init__(self, *, capacity: int = FRAME_CHANNEL_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._queue: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._drop_pending = False
        self.delivered: int = 0
        self.discarded: int = 0

    # -------------------------
    # Producer side
    # -------------------------

    async def send(self, frame: AudioFrame) -> None:
        """
        Enqueue a frame, waiting while the channel is full.

        Raises:
            ChannelClosed if the channel is (or becomes) closed.
        """
        if self._closed:
            raise ChannelClosed()
        await self._queue.put(frame)
        if self._closed:
            # Consumer went away while we were waiting for room
            raise ChannelClosed()
        self.delivered += 1

    def close(self, *, drop_pending: bool = False) -> None:
        """
        End the stream. Idempotent.

        drop_pending=False: consumer still receives everything already sent.
        drop_pending=True: pending frames are discarded (consumer side close),
        which also releases a producer blocked in send().
        """
        if self._closed:
            return
        self._closed = True

        if self._queue.full():
            # A producer may be blocked in put(); no sentinel while full
            if drop_pending:
                self._drop_pending = True
                self._drain()
            return

        if drop_pending:
            self._drop_pending = True
            self._drain()
        self._queue.put_nowait(None)

    def _drain(self) -> None:
        while not self._queue.empty():
            if self._queue.get_nowait() is not None:
                self.discarded += 1

    # -------------------------
    # Consumer side
    # -------------------------

    async def receive(self) -> Optional[AudioFrame]:
        """Return the next frame, or None once the stream has ended."""
        if self._closed and (self._drop_pending or self._queue.empty()):
            return None
        return await self._queue.get()

    def __aiter__(self) -> FrameChannel:
        return self

    async def __anext__(self) -> AudioFrame:
        frame = await self.receive()
        if frame is None:
            raise StopAsyncIteration
        return frame

    # -------------------------
    # Introspection helpers
    # -------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def capacity(self) -> int:
        return self._capacity

    def pending(self) -> int:
        return self._queue.qsize()

    def snapshot(self) -> dict[str, int | bool]:
        return {
            "capacity": self._capacity,
            "pending": self.pending(),
            "delivered": self.delivered,
            "discarded": self.discarded,
            "closed": self._closed,
        }
