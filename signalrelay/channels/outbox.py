"""Bounded drop-oldest queue for messages that could not be sent yet."""

from collections import deque
from typing import Awaitable, Callable, Iterator

from loguru import logger

from signalrelay.bus.events import QueuedOutbound

MAX_OUTGOING_QUEUE = 1000


class OutboundQueue:
    """FIFO of undelivered messages; the oldest entry is evicted when full."""

    def __init__(self, maxsize: int = MAX_OUTGOING_QUEUE):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self._items: deque[QueuedOutbound] = deque()
        self._flushing = False

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[QueuedOutbound]:
        return iter(list(self._items))

    @property
    def flushing(self) -> bool:
        return self._flushing

    def enqueue(self, item: QueuedOutbound) -> QueuedOutbound | None:
        """Append *item*; returns the evicted entry if the queue was full."""
        dropped = None
        if len(self._items) >= self.maxsize:
            dropped = self._items.popleft()
            logger.warning(
                f"Signal outgoing queue full, dropping oldest message for {dropped.chat} "
                f"(queue size {len(self._items)})"
            )
        self._items.append(item)
        return dropped

    def clear(self) -> None:
        self._items.clear()

    async def flush(
        self,
        deliver: Callable[[QueuedOutbound], Awaitable[bool]],
        is_connected: Callable[[], bool],
    ) -> int:
        """Send queued messages oldest first, one at a time.

        ``deliver`` returns False when it could not send; it is expected to
        have re-queued the item itself. Each entry present when the flush
        starts is attempted at most once. Stops early on disconnect.
        Returns the number of messages delivered.
        """
        if self._flushing or not self._items:
            return 0

        self._flushing = True
        sent = 0
        try:
            budget = len(self._items)
            logger.info(f"Flushing Signal outgoing queue ({budget} messages)")
            while budget > 0 and self._items and is_connected():
                item = self._items.popleft()
                budget -= 1
                if await deliver(item):
                    sent += 1
        finally:
            self._flushing = False
        return sent
