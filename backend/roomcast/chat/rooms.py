"""Room lifecycle: create, invite, leave and list.

Rooms are never hard-deleted. A room whose last participant leaves (or a
direct room that loses either side) gets ``deleted_at`` set and disappears
from listings, unread summaries and the message API.
"""
import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from roomcast.auth.service import ProfileService
from roomcast.clock import Clock, to_storage, utcnow
from roomcast.db import Database
from roomcast.errors import InvalidInput, NotFound

from .ordering import sort_rooms_by_activity
from .schemas import ChatRoom, CreateRoomRequest, RoomSummary, RoomType
from .store import MessageStore
from .unread import UnreadService

logger = logging.getLogger(__name__)


class RoomService:
    """Membership-level operations on chat rooms."""

    def __init__(
        self,
        db: Database,
        store: MessageStore,
        profiles: ProfileService,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._store = store
        self._profiles = profiles
        self._unread = UnreadService(db)
        self._clock = clock

    # =========================================================================
    # Create
    # =========================================================================

    def create_room(self, creator_id: str, request: CreateRoomRequest) -> RoomSummary:
        """Create a room, or return the existing direct room for the pair.

        The creator is always a participant and admin. A direct room whose
        only participant is the creator becomes a ``self`` room.

        Raises:
            InvalidInput: Wrong participant count for the room type, or
                unknown user ids.
        """
        others = [uid for uid in dict.fromkeys(request.participant_ids) if uid != creator_id]
        room_type = request.type

        if room_type == RoomType.DIRECT and not others:
            room_type = RoomType.SELF
        if room_type == RoomType.DIRECT and len(others) != 1:
            raise InvalidInput("Direct rooms require exactly one other participant")
        if room_type == RoomType.SELF and others:
            raise InvalidInput("Self rooms cannot have other participants")
        if room_type == RoomType.GROUP and not others:
            raise InvalidInput("Group rooms require at least one other participant")

        if others and self._profiles.existing_ids(others) != set(others):
            raise InvalidInput("Some user IDs are invalid")

        if room_type == RoomType.DIRECT:
            existing = self._find_direct_room(creator_id, others[0])
            if existing is not None:
                logger.info(f"[Rooms] Reusing direct room {existing.id} for {creator_id} and {others[0]}")
                return self.summarize(existing, creator_id)
        if room_type == RoomType.SELF:
            existing = self._find_self_room(creator_id)
            if existing is not None:
                return self.summarize(existing, creator_id)

        room_id = str(uuid.uuid4())
        now = to_storage(self._clock())
        name = request.name if room_type == RoomType.GROUP else None
        with self._db.transaction():
            self._db.execute(
                "INSERT INTO chat_rooms (id, name, type, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                [room_id, name, room_type.value, now, now],
            )
            self._add_participants(room_id, [creator_id], admin=True)
            self._add_participants(room_id, others)

        logger.info(f"[Rooms] Created {room_type.value} room {room_id} by {creator_id} with {len(others)} others")
        return self.summarize(self._store.get_room(room_id), creator_id)

    def _find_direct_room(self, user_a: str, user_b: str) -> Optional[ChatRoom]:
        row = self._db.fetch_dict(
            """
            SELECT r.id, r.name, r.type, r.created_at, r.updated_at, r.deleted_at
            FROM chat_rooms r
            WHERE r.type = 'direct' AND r.deleted_at IS NULL
              AND EXISTS (SELECT 1 FROM chat_room_participants WHERE room_id = r.id AND user_id = ?)
              AND EXISTS (SELECT 1 FROM chat_room_participants WHERE room_id = r.id AND user_id = ?)
              AND (SELECT count(*) FROM chat_room_participants WHERE room_id = r.id) = 2
            ORDER BY r.created_at
            LIMIT 1
            """,
            [user_a, user_b],
        )
        return ChatRoom.model_validate(row) if row else None

    def _find_self_room(self, user_id: str) -> Optional[ChatRoom]:
        row = self._db.fetch_dict(
            """
            SELECT r.id, r.name, r.type, r.created_at, r.updated_at, r.deleted_at
            FROM chat_rooms r
            JOIN chat_room_participants p ON p.room_id = r.id
            WHERE r.type = 'self' AND r.deleted_at IS NULL AND p.user_id = ?
            ORDER BY r.created_at
            LIMIT 1
            """,
            [user_id],
        )
        return ChatRoom.model_validate(row) if row else None

    def _add_participants(self, room_id: str, user_ids: Sequence[str], admin: bool = False) -> None:
        now = to_storage(self._clock())
        for user_id in user_ids:
            self._db.execute(
                "INSERT INTO chat_room_participants (room_id, user_id, joined_at, is_admin) VALUES (?, ?, ?, ?)",
                [room_id, user_id, now, admin],
            )

    # =========================================================================
    # Membership changes
    # =========================================================================

    def invite(self, room_id: str, caller_id: str, user_ids: Sequence[str]) -> RoomSummary:
        """Add *user_ids* to the room; direct and self rooms turn into groups.

        Raises:
            NotFound: Room missing or caller not a participant.
            InvalidInput: Empty list, unknown users, or everyone already in.
        """
        room = self._store.find_room(room_id)
        if room is None or not self._store.is_participant(room_id, caller_id):
            raise NotFound("Room not found or access denied")

        requested = list(dict.fromkeys(user_ids))
        if not requested:
            raise InvalidInput("User IDs are required")
        if self._profiles.existing_ids(requested) != set(requested):
            raise InvalidInput("Some user IDs are invalid")

        current = {p.user_id for p in self._store.list_participants(room_id)}
        new_ids = [uid for uid in requested if uid not in current]
        if not new_ids:
            raise InvalidInput("All users are already participants")

        with self._db.transaction():
            self._add_participants(room_id, new_ids)
            if room.type != RoomType.GROUP:
                self._db.execute(
                    "UPDATE chat_rooms SET type = 'group', updated_at = ? WHERE id = ?",
                    [to_storage(self._clock()), room_id],
                )

        logger.info(f"[Rooms] {caller_id} invited {len(new_ids)} users to room {room_id}")
        return self.summarize(self._store.get_room(room_id), caller_id)

    def leave(self, room_id: str, user_id: str) -> bool:
        """Remove *user_id* from the room.

        Returns:
            True if the room was soft-deleted as a result.

        Raises:
            NotFound: Room missing or caller not a participant.
        """
        room = self._store.find_room(room_id)
        if room is None or not self._store.is_participant(room_id, user_id):
            raise NotFound("Room not found or access denied")

        with self._db.transaction():
            self._db.execute(
                "DELETE FROM chat_room_participants WHERE room_id = ? AND user_id = ?",
                [room_id, user_id],
            )
            self._db.execute(
                "DELETE FROM chat_typing_status WHERE room_id = ? AND user_id = ?",
                [room_id, user_id],
            )
            remaining = self._db.fetch_one(
                "SELECT count(*) FROM chat_room_participants WHERE room_id = ?",
                [room_id],
            )[0]
            deleted = remaining == 0 or room.type == RoomType.DIRECT
            if deleted:
                self._db.execute(
                    "UPDATE chat_rooms SET deleted_at = ? WHERE id = ?",
                    [to_storage(self._clock()), room_id],
                )

        logger.info(f"[Rooms] {user_id} left room {room_id}{' (room closed)' if deleted else ''}")
        return deleted

    # =========================================================================
    # Listing
    # =========================================================================

    def summarize(self, room: ChatRoom, user_id: str) -> RoomSummary:
        """Room with participants, last message and the user's unread count."""
        return RoomSummary(
            **room.model_dump(),
            participants=self._store.list_participants(room.id),
            last_message=self._store.latest_message(room.id),
            unread_count=self._unread.unread_count(user_id, room.id),
        )

    def list_rooms(self, user_id: str, page: int = 1, limit: int = 50) -> Tuple[List[RoomSummary], bool]:
        """The user's live rooms, most recently active first.

        Returns:
            Tuple of (rooms on the requested page, has_more).
        """
        rows = self._db.fetch_dicts(
            """
            SELECT r.id, r.name, r.type, r.created_at, r.updated_at, r.deleted_at
            FROM chat_rooms r
            JOIN chat_room_participants p ON p.room_id = r.id
            WHERE p.user_id = ? AND r.deleted_at IS NULL
            ORDER BY r.updated_at DESC, r.id
            """,
            [user_id],
        )
        rooms = sort_rooms_by_activity(
            self.summarize(ChatRoom.model_validate(row), user_id) for row in rows
        )
        start = (max(page, 1) - 1) * limit
        return rooms[start:start + limit], len(rooms) > start + limit
