"""
Host notification fan-out for the UI layer.

Producers (capture supervisor, companion client) call publish(); each
WebSocket subscriber gets its own bounded queue. A slow subscriber loses
its oldest notifications instead of slowing the producer down.
"""

from __future__ import annotations

import asyncio
from typing import Any

from observability.logger import log_event, now_ms


_DEFAULT_QUEUE_SIZE = 256


class Subscription:
    def __init__(self, maxsize: int) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped: int = 0

    def offer(self, notification: Any) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(notification)

    async def get(self) -> Any:
        return await self.queue.get()


class NotificationHub:
    """Broadcasts host notifications to every current subscriber."""

    def __init__(self, *, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self.published: int = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> Subscription:
        sub = Subscription(self._queue_size)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
            if sub.dropped:
                log_event({
                    "ts_ms": now_ms(),
                    "level": "WARNING",
                    "event_type": "NOTIFICATION_SUBSCRIBER_DROPPED",
                    "dropped": sub.dropped,
                })

    async def publish(self, notification: Any) -> None:
        self.published += 1
        for sub in list(self._subscriptions):
            sub.offer(notification)
