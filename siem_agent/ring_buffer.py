"""
Bounded in-memory event queue with disk overflow.

RingBuffer is a fixed-capacity circular FIFO. When an add finds it full, the
whole content is spilled to the OverflowStore and the buffer starts over
empty; at construction a leftover snapshot is loaded back once.
"""

import logging
import threading
from typing import List, Optional, Sequence

from siem_agent.errors import BufferFullError, OverflowStoreError
from siem_agent.events import Event
from siem_agent.overflow_store import OverflowStore


class RingBuffer:
    """
    Fixed-size FIFO of events.

    Invariants: 0 <= count <= capacity; head and tail are always taken modulo
    capacity; the oldest unconsumed event sits at tail.
    """

    def __init__(
        self,
        capacity: int,
        overflow_store: Optional[OverflowStore] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._slots: List[Optional[Event]] = [None] * capacity
        self._head = 0
        self._tail = 0
        self._count = 0
        self._lock = threading.Lock()
        self.overflow_store = overflow_store
        self.log = logger or logging.getLogger(__name__)

        if overflow_store is not None:
            self._recover()

    @property
    def capacity(self) -> int:
        return self._capacity

    def size(self) -> int:
        with self._lock:
            return self._count

    def __len__(self) -> int:
        return self.size()

    def add(self, event: Event):
        """
        Append an event.

        A full buffer is first spilled to the overflow store; if that fails the
        error propagates and neither the buffer nor the event is changed.
        """
        with self._lock:
            if self._count >= self._capacity:
                if self.overflow_store is None:
                    raise BufferFullError(f"buffer full ({self._capacity} events) and no overflow store")
                self.overflow_store.save(self._contents())
                self._reset()
                self.log.warning("Buffer full, spilled %d event(s) to disk", self._capacity)

            self._slots[self._head] = event
            self._head = (self._head + 1) % self._capacity
            self._count += 1

    def peek_batch(self, n: int) -> List[Event]:
        """Up to n oldest events in FIFO order, without removing them."""
        with self._lock:
            n = max(0, min(n, self._count))
            return [self._slots[(self._tail + i) % self._capacity] for i in range(n)]

    def remove_front(self, n: int) -> int:
        """Discard the n oldest events (clamped to the current count)."""
        with self._lock:
            return self._drop_front(n)

    def discard_delivered(self, batch: Sequence[Event]) -> int:
        """
        Remove the leading events that are exactly the objects in batch.

        A spill between peek and delivery empties the buffer; matching by
        identity keeps newer events from being discarded in their place.
        """
        with self._lock:
            matched = 0
            for i, event in enumerate(batch[: self._count]):
                if self._slots[(self._tail + i) % self._capacity] is not event:
                    break
                matched += 1
            return self._drop_front(matched)

    def flush(self) -> int:
        """
        Persist the current content to the overflow store and empty the buffer.

        Used on controlled shutdown. Returns the number of events written.
        """
        with self._lock:
            if self._count == 0:
                return 0
            if self.overflow_store is None:
                raise OverflowStoreError("no overflow store configured")
            written = self._count
            self.overflow_store.save(self._contents())
            self._reset()
            return written

    def clear(self):
        with self._lock:
            self._reset()

    # ------------------------------------------------------------------
    # Internal helpers (call with self._lock held)
    # ------------------------------------------------------------------

    def _contents(self) -> List[Event]:
        return [self._slots[(self._tail + i) % self._capacity] for i in range(self._count)]

    def _drop_front(self, n: int) -> int:
        n = max(0, min(n, self._count))
        for i in range(n):
            self._slots[(self._tail + i) % self._capacity] = None
        self._tail = (self._tail + n) % self._capacity
        self._count -= n
        return n

    def _reset(self):
        self._slots = [None] * self._capacity
        self._head = 0
        self._tail = 0
        self._count = 0

    def _recover(self):
        """Load a leftover snapshot once, then remove it."""
        if not self.overflow_store.exists():
            return
        try:
            events = self.overflow_store.load()
        except OverflowStoreError as e:
            self.log.error("Could not recover buffer snapshot: %s", e)
            try:
                self.overflow_store.quarantine()
            except OverflowStoreError as qe:
                self.log.error("Unreadable snapshot stays in place: %s", qe)
            return

        with self._lock:
            for event in events[: self._capacity]:
                self._slots[self._head] = event
                self._head = (self._head + 1) % self._capacity
                self._count += 1

        if len(events) > self._capacity:
            self.log.warning(
                "Snapshot held %d events, capacity is %d; dropped %d",
                len(events), self._capacity, len(events) - self._capacity,
            )

        try:
            self.overflow_store.delete()
        except OverflowStoreError as e:
            # Known gap: the same events are replayed again on the next start
            self.log.error("Recovered snapshot could not be removed, it will be replayed again: %s", e)
        self.log.info("Recovered %d event(s) from %s", self._count, self.overflow_store.path)
