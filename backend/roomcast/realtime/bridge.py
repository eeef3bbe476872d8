"""SSE bridge: one change-feed subscription per connection, framed as events.

Wire format: every event is a single ``data:`` line carrying a JSON object
with a ``type`` field, terminated by a blank line. ``new_message`` frames
also carry an ``id:`` line (the message id) so a reconnecting EventSource
sends it back as ``Last-Event-ID``.

Event types:
    - connected: first frame of every stream, ``{"type", "roomId", "timestamp"}``
    - new_message: a committed message, enriched with the sender profile
    - participant_update: a changed participant row (read watermark moved)
    - ping: keep-alive on a fixed cadence

Lifecycle:
    subscribe -> connected -> replay since resume point -> live loop.
    The subscription is released when the stream exits, whether the client
    disconnects (generator closed or cancelled) or the subscription
    overflows.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Iterator, Optional

from pydantic import ValidationError

from roomcast.auth.service import ProfileService
from roomcast.chat.schemas import ChatMessage, Profile, Watermark
from roomcast.chat.store import MessageStore
from roomcast.clock import isoformat, utcnow
from roomcast.errors import ChatError

from .feed import MESSAGES_TABLE, PARTICIPANTS_TABLE, ChangeEvent, ChangeFeed, ChangeKind, SubscriptionOverflow

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def format_sse(payload: Dict[str, Any], event_id: Optional[str] = None) -> str:
    """Serialise *payload* as one SSE frame."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(payload, separators=(',', ':'))}")
    return "\n".join(lines) + "\n\n"


def _now() -> str:
    return isoformat(utcnow())


class EventBridge:
    """Turns change-feed events for one room into SSE frames.

    Args:
        feed: Change feed to subscribe to.
        store: Message store, used for replay on connect.
        profiles: Profile lookup for sender enrichment.
        ping_interval: Seconds between ``ping`` frames.
        replay_limit: Maximum messages replayed on connect.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        store: MessageStore,
        profiles: ProfileService,
        ping_interval: float = 30.0,
        replay_limit: int = 100,
    ) -> None:
        self._feed = feed
        self._store = store
        self._profiles = profiles
        self._ping_interval = ping_interval
        self._replay_limit = replay_limit

    async def stream(
        self,
        room_id: str,
        user_id: str,
        resume: Optional[Watermark] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for *room_id* until the consumer stops.

        The stream ends on its own only when the subscription overflows;
        the client then reconnects with ``Last-Event-ID`` and replays.

        Args:
            room_id: Room to stream; membership is checked by the caller.
            user_id: Viewer, used to pick the default replay point.
            resume: Replay messages after this point. Defaults to the
                viewer's read watermark.
        """
        with self._feed.subscribe(room_id, tables=(MESSAGES_TABLE, PARTICIPANTS_TABLE)) as subscription:
            logger.info(f"[SSE] {user_id} connected to room {room_id}")
            try:
                yield format_sse({"type": "connected", "roomId": room_id, "timestamp": _now()})

                last_key: Optional[Watermark] = None
                for message in self._replay(room_id, user_id, resume):
                    last_key = message.sort_key
                    yield self._message_frame(message)

                loop = asyncio.get_running_loop()
                next_ping = loop.time() + self._ping_interval
                while True:
                    remaining = next_ping - loop.time()
                    if remaining <= 0:
                        next_ping += self._ping_interval
                        yield format_sse({"type": "ping", "timestamp": _now()})
                        continue

                    event = await subscription.get(timeout=remaining)
                    if event is None:
                        continue

                    frame = self._frame_for(event, last_key)
                    if frame is not None:
                        yield frame
            except SubscriptionOverflow as e:
                logger.warning(f"[SSE] Closing stream for {user_id} in room {room_id}: {e}")
            except asyncio.CancelledError:
                logger.info(f"[SSE] {user_id} disconnected from room {room_id}")
                raise

    # =========================================================================
    # Replay
    # =========================================================================

    def _replay(self, room_id: str, user_id: str, resume: Optional[Watermark]) -> Iterator[ChatMessage]:
        """Stored messages after *resume*, in batches of ``replay_limit``.

        Without a resume point or read watermark only the newest page is
        replayed; older history is loaded by the client on demand.
        """
        try:
            if resume is None:
                participant = self._store.get_participant(room_id, user_id)
                if participant is not None and participant.last_read_at is not None:
                    resume = Watermark(participant.last_read_at)
            if resume is None:
                messages, _ = self._store.list_page(room_id, page=1, limit=self._replay_limit)
                yield from messages
                return
            while True:
                batch = self._store.list_since(room_id, resume, self._replay_limit)
                yield from batch
                if len(batch) < self._replay_limit:
                    return
                resume = batch[-1].sort_key
        except ChatError as e:
            logger.error(f"[SSE] Replay failed for room {room_id}: {e}")

    # =========================================================================
    # Framing
    # =========================================================================

    def _frame_for(self, event: ChangeEvent, last_key: Optional[Watermark]) -> Optional[str]:
        if event.table == MESSAGES_TABLE and event.kind == ChangeKind.INSERT:
            try:
                message = ChatMessage.model_validate(event.row)
            except ValidationError as e:
                logger.error(f"[SSE] Dropping malformed message row in room {event.room_id}: {e}")
                return None
            if last_key is not None and message.sort_key <= last_key:
                return None
            message.sender = self._enrich(message.sender_id)
            message.read_by = [message.sender_id]
            return self._message_frame(message)

        if event.table == PARTICIPANTS_TABLE and event.kind == ChangeKind.UPDATE:
            return format_sse({
                "type": "participant_update",
                "data": event.row,
                "timestamp": _now(),
            })

        return None

    def _enrich(self, sender_id: str) -> Optional[Profile]:
        try:
            return self._profiles.get_profile(sender_id)
        except ChatError as e:
            logger.error(f"[SSE] Sender lookup failed for {sender_id}: {e}")
            return None

    def _message_frame(self, message: ChatMessage) -> str:
        return format_sse(
            {
                "type": "new_message",
                "message": message.model_dump(mode="json"),
                "timestamp": _now(),
            },
            event_id=message.id,
        )
