"""Ordering rules shared by the server room list and the client controller."""
from datetime import datetime
from typing import Dict, Iterable, List, Sequence, Tuple

from .schemas import ChatMessage, RoomSummary


def room_activity(room: RoomSummary) -> datetime:
    """``last_message.created_at`` if the room has messages, else ``created_at``."""
    if room.last_message is not None:
        return room.last_message.created_at
    return room.created_at


def sort_rooms_by_activity(rooms: Iterable[RoomSummary]) -> List[RoomSummary]:
    """Most recent activity first; equal timestamps keep their prior order."""
    # sorted() is stable with reverse=True, so ties keep input order.
    return sorted(rooms, key=room_activity, reverse=True)


def merge_messages(existing: Sequence[ChatMessage], incoming: Iterable[ChatMessage]) -> Tuple[ChatMessage, ...]:
    """Union by message id, ordered by (created_at, seq).

    A message already present is replaced by the incoming copy so that
    read receipts and enrichment stay current.
    """
    by_id: Dict[str, ChatMessage] = {m.id: m for m in existing}
    for message in incoming:
        by_id[message.id] = message
    return tuple(sorted(by_id.values(), key=lambda m: (m.created_at, m.seq)))
