"""Fan-out of live updates to async iterator subscribers."""

import asyncio
from typing import AsyncIterator, Callable, Generic, Iterable, List, TypeVar


T = TypeVar("T")

_CLOSED = object()


class Broadcast(Generic[T]):
    """
    Publish items to any number of async iterator subscribers.

    A new subscriber first receives the current state from ``snapshot``,
    then every item published after it subscribed. Each subscriber has its
    own unbounded queue, so a slow reader never blocks the publisher.
    """

    def __init__(self, snapshot: Callable[[], Iterable[T]]):
        self._snapshot = snapshot
        self._queues: List[asyncio.Queue] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, item: T) -> None:
        if self._closed:
            return
        for queue in self._queues:
            queue.put_nowait(item)

    def close(self) -> None:
        """End every subscription after its queued items are drained."""
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    async def subscribe(self) -> AsyncIterator[T]:
        # Snapshot and registration happen in the same step, so no item can
        # fall between them.
        queue: asyncio.Queue = asyncio.Queue()
        initial = list(self._snapshot())
        if not self._closed:
            self._queues.append(queue)
        try:
            for item in initial:
                yield item
            if self._closed and queue not in self._queues:
                return
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            if queue in self._queues:
                self._queues.remove(queue)
