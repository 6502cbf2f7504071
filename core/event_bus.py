"""In-process pub/sub for bulk-operation progress events."""

from __future__ import annotations

import asyncio
from collections import defaultdict


class EventBus:
    """Fan-out of progress events keyed by operation ID.

    Each subscriber owns a bounded queue. A reader that falls behind loses the
    oldest buffered events, never the newest: every event carries the full
    counters, so the latest one is all a late reader needs.
    """

    def __init__(self, max_buffered: int = 256) -> None:
        self.max_buffered = max_buffered
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, operation_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_buffered)
        self._subscribers[operation_id].append(queue)
        return queue

    def unsubscribe(self, operation_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(operation_id)
        if not queues:
            return
        if queue in queues:
            queues.remove(queue)
        if not queues:
            del self._subscribers[operation_id]

    def has_subscribers(self, operation_id: str) -> bool:
        return bool(self._subscribers.get(operation_id))

    async def publish(self, operation_id: str, event: dict) -> None:
        for queue in list(self._subscribers.get(operation_id, [])):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
