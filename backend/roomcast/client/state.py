"""Immutable client session state and its transitions.

Every change to what a chat client shows is a pure function
``(state, event) -> state``. The controller in ``session.py`` owns the only
reference to the current snapshot and swaps it for the result of a
transition; nothing mutates a snapshot in place, so a reader holding an
older snapshot always sees a consistent view.
"""
from enum import Enum
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from roomcast.chat.ordering import merge_messages, sort_rooms_by_activity
from roomcast.chat.schemas import ChatMessage, Participant, RoomSummary, TypingStatus


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class SessionState(BaseModel):
    """Snapshot of one client's chat view.

    Attributes:
        user_id: The signed-in user.
        rooms: Room list, most recently active first.
        current_room_id: The one room whose messages are buffered.
        messages: Buffer for the current room, ordered by (created_at, seq).
        page: Oldest history page loaded for the current room.
        has_more: Whether older pages exist.
        draft: Unsent composer text.
        notice: User-visible error from the last failed action.
        connection: State of the live event stream.
        typing: Other users typing in the current room.
    """
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    rooms: Tuple[RoomSummary, ...] = ()
    current_room_id: Optional[str] = None
    messages: Tuple[ChatMessage, ...] = ()
    page: int = 0
    has_more: bool = False
    draft: str = ""
    notice: Optional[str] = None
    connection: ConnectionStatus = ConnectionStatus.IDLE
    typing: Tuple[TypingStatus, ...] = ()

    @property
    def current_room(self) -> Optional[RoomSummary]:
        for room in self.rooms:
            if room.id == self.current_room_id:
                return room
        return None

    @property
    def newest_message(self) -> Optional[ChatMessage]:
        return self.messages[-1] if self.messages else None


# =============================================================================
# Helpers
# =============================================================================


def _with_last_message(rooms: Iterable[RoomSummary], message: ChatMessage, bump_unread: bool) -> Tuple[RoomSummary, ...]:
    updated = []
    for room in rooms:
        if room.id == message.room_id:
            changes = {}
            current = room.last_message
            if current is None or (message.created_at, message.seq) >= (current.created_at, current.seq):
                changes["last_message"] = message
            if bump_unread:
                changes["unread_count"] = room.unread_count + 1
            if changes:
                room = room.model_copy(update=changes)
        updated.append(room)
    return tuple(sort_rooms_by_activity(updated))


# =============================================================================
# Transitions
# =============================================================================


def rooms_loaded(state: SessionState, rooms: Iterable[RoomSummary]) -> SessionState:
    return state.model_copy(update={"rooms": tuple(sort_rooms_by_activity(rooms))})


def room_switched(state: SessionState, room_id: str) -> SessionState:
    """Make *room_id* current; the old room's buffer is dropped."""
    rooms = tuple(
        room.model_copy(update={"unread_count": 0}) if room.id == room_id else room
        for room in state.rooms
    )
    return state.model_copy(update={
        "current_room_id": room_id,
        "rooms": rooms,
        "messages": (),
        "page": 0,
        "has_more": False,
        "typing": (),
        "notice": None,
    })


def page_loaded(
    state: SessionState,
    room_id: str,
    messages: Iterable[ChatMessage],
    page: int,
    has_more: bool,
) -> SessionState:
    """Merge a history page; pages for a room that is no longer current are ignored."""
    if room_id != state.current_room_id:
        return state
    return state.model_copy(update={
        "messages": merge_messages(state.messages, messages),
        "page": max(state.page, page),
        "has_more": has_more,
    })


def gap_filled(state: SessionState, room_id: str, messages: Iterable[ChatMessage]) -> SessionState:
    """Merge messages fetched with ``list_since`` after a reconnect."""
    if room_id != state.current_room_id:
        return state
    return state.model_copy(update={"messages": merge_messages(state.messages, messages)})


def message_sent(state: SessionState, message: ChatMessage) -> SessionState:
    """The store accepted our message: buffer it, clear the draft, re-sort rooms."""
    update = {
        "rooms": _with_last_message(state.rooms, message, bump_unread=False),
        "draft": "",
        "notice": None,
    }
    if message.room_id == state.current_room_id:
        update["messages"] = merge_messages(state.messages, [message])
    return state.model_copy(update=update)


def send_failed(state: SessionState, reason: str) -> SessionState:
    """Record a notice; the buffer and the draft stay as they were."""
    return state.model_copy(update={"notice": f"Message not sent: {reason}"})


def message_received(state: SessionState, message: ChatMessage) -> SessionState:
    """A ``new_message`` event arrived; duplicates by id are absorbed."""
    in_current = message.room_id == state.current_room_id
    already_seen = in_current and any(m.id == message.id for m in state.messages)
    bump_unread = not in_current and message.sender_id != state.user_id and not already_seen
    update = {"rooms": _with_last_message(state.rooms, message, bump_unread=bump_unread)}
    if in_current:
        update["messages"] = merge_messages(state.messages, [message])
    return state.model_copy(update=update)


def receipts_updated(state: SessionState, participant: Participant) -> SessionState:
    """A ``participant_update`` moved someone's watermark: refresh ``read_by``."""
    if participant.room_id != state.current_room_id or participant.last_read_at is None:
        return state
    watermark = participant.last_read_at
    messages = tuple(
        m.model_copy(update={"read_by": [*m.read_by, participant.user_id]})
        if m.created_at <= watermark and participant.user_id not in m.read_by
        else m
        for m in state.messages
    )
    rooms = tuple(
        room.model_copy(update={
            "participants": [
                p.model_copy(update={
                    "last_read_at": participant.last_read_at,
                    "last_read_message_id": participant.last_read_message_id,
                }) if p.user_id == participant.user_id else p
                for p in room.participants
            ]
        }) if room.id == participant.room_id else room
        for room in state.rooms
    )
    return state.model_copy(update={"messages": messages, "rooms": rooms})


def draft_changed(state: SessionState, text: str) -> SessionState:
    return state.model_copy(update={"draft": text})


def typing_updated(state: SessionState, room_id: str, statuses: Iterable[TypingStatus]) -> SessionState:
    if room_id != state.current_room_id:
        return state
    return state.model_copy(update={"typing": tuple(statuses)})


def connection_changed(state: SessionState, status: ConnectionStatus) -> SessionState:
    return state.model_copy(update={"connection": status})


def notice_cleared(state: SessionState) -> SessionState:
    return state.model_copy(update={"notice": None})
