"""In-process change feed over the chat store.

The store publishes one ``ChangeEvent`` per committed row change. Each SSE
connection subscribes once and receives the events for its room on a private
bounded ``asyncio.Queue``; nothing is shared between subscribers except the
feed's subscriber index.

Publishing is thread-safe: events are handed to each subscriber's event loop
with ``call_soon_threadsafe``, which preserves publish order per loop.
A subscriber that falls a full queue behind stops receiving; once its
queued events are consumed, ``get`` raises ``SubscriptionOverflow`` so the
connection ends and the client resumes from its last event id.
Tests drive the SSE bridge by publishing synthetic events here.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set

from roomcast.clock import utcnow

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "chat_messages"
PARTICIPANTS_TABLE = "chat_room_participants"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class SubscriptionOverflow(Exception):
    """A subscriber fell behind and lost events; its stream must end."""


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row change.

    Attributes:
        table: Table the row belongs to.
        kind: insert or update.
        room_id: Room the row is scoped to (the subscription filter).
        row: JSON-safe snapshot of the row after the change.
        committed_at: When the store committed the change.
    """
    table: str
    kind: ChangeKind
    room_id: str
    row: Dict[str, Any]
    committed_at: datetime = field(default_factory=utcnow)


class Subscription:
    """One subscriber's view of the feed for a single room."""

    def __init__(
        self,
        feed: "ChangeFeed",
        room_id: str,
        tables: Optional[Iterable[str]] = None,
        maxsize: int = 1000,
    ) -> None:
        self._feed = feed
        self.room_id = room_id
        self.tables: Optional[FrozenSet[str]] = frozenset(tables) if tables else None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._loop = asyncio.get_running_loop()
        self.closed = False
        self.overflowed = False

    def accepts(self, event: ChangeEvent) -> bool:
        return self.tables is None or event.table in self.tables

    def offer(self, event: ChangeEvent) -> None:
        """Hand *event* to this subscriber's loop (any thread)."""
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, event)
        except RuntimeError:
            # Loop already closed; the connection is gone.
            self.close()

    def _put(self, event: ChangeEvent) -> None:
        if self.closed or self.overflowed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # Later events would follow a gap: stop accepting, end once drained.
            self.overflowed = True
            logger.warning(
                f"[Feed] Subscriber queue full for room {self.room_id}; "
                f"dropped {event.table} {event.kind.value}, ending subscription"
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Wait for the next event; ``None`` when *timeout* elapses first.

        Raises:
            SubscriptionOverflow: Once the queued events before an overflow
                have been consumed.
        """
        if self.overflowed and self._queue.empty():
            raise SubscriptionOverflow(f"Subscription for room {self.room_id} overflowed")
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        """Detach from the feed. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ChangeFeed:
    """Room-scoped publish/subscribe hub.

    Note:
        This is a singleton-style instance shared by the store (publisher)
        and every SSE connection (subscribers).
    """

    _instance: Optional["ChangeFeed"] = None

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, queue_size: int = 1000) -> "ChangeFeed":
        if cls._instance is None:
            cls._instance = cls(queue_size)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def subscribe(self, room_id: str, tables: Optional[Iterable[str]] = None) -> Subscription:
        """Register a new subscriber; must run inside the subscriber's loop."""
        subscription = Subscription(self, room_id, tables, self.queue_size)
        with self._lock:
            self._subscribers[room_id].add(subscription)
        logger.debug(f"[Feed] Subscribed to room {room_id} ({self.subscriber_count(room_id)} active)")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.room_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.room_id]

    def publish(self, event: ChangeEvent) -> int:
        """Deliver *event* to the room's subscribers.

        Returns:
            Number of subscribers the event was offered to.
        """
        with self._lock:
            targets = [s for s in self._subscribers.get(event.room_id, ()) if s.accepts(event)]
        for subscription in targets:
            subscription.offer(event)
        return len(targets)

    def subscriber_count(self, room_id: Optional[str] = None) -> int:
        with self._lock:
            if room_id is not None:
                return len(self._subscribers.get(room_id, ()))
            return sum(len(s) for s in self._subscribers.values())
