"""Message store and delivery log.

This module is the single writer of message ordering. It persists messages,
room membership and read watermarks in DuckDB and publishes every committed
change to the realtime change feed.

Key guarantees:
    - Append-only log per room, ordered by (created_at, seq)
    - created_at strictly increases within a room, even for concurrent sends
    - ``list_since`` is restartable: same watermark, same prefix
    - Read watermarks only move forward; a stale ``mark_read`` is a no-op
    - The sender is always in a message's ``read_by`` set

Thread Safety:
    Writes run inside ``Database.transaction()``, which serialises them on
    the shared connection. Change-feed publication happens after commit.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from roomcast.auth.service import ProfileService
from roomcast.clock import Clock, ensure_utc, to_storage, utcnow
from roomcast.db import Database, placeholders
from roomcast.errors import Forbidden, InvalidInput, NotFound
from roomcast.files.schemas import AttachmentPolicy
from roomcast.realtime.feed import (
    MESSAGES_TABLE,
    PARTICIPANTS_TABLE,
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
)

from .schemas import ChatMessage, ChatRoom, MessageType, Participant, Watermark

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MESSAGE_COLUMNS = (
    "id, seq, room_id, sender_id, content, message_type, file_url, file_name, "
    "file_size, file_type, reply_to_id, created_at"
)

PARTICIPANT_COLUMNS = "room_id, user_id, joined_at, last_read_at, last_read_message_id, is_admin"

# Smallest step DuckDB TIMESTAMP can represent.
TIMESTAMP_STEP = timedelta(microseconds=1)

# Cap for read_status() without a room filter
READ_STATUS_LIMIT = 100


class MessageStore:
    """Durable, ordered message log with read watermarks.

    Args:
        db: Shared database.
        feed: Change feed to publish committed changes on (optional).
        profiles: Profile lookup used to enrich returned messages.
        attachments: Size/type policy for attachment metadata.
        clock: Time source; injectable for tests.
    """

    def __init__(
        self,
        db: Database,
        feed: Optional[ChangeFeed] = None,
        profiles: Optional[ProfileService] = None,
        attachments: Optional[AttachmentPolicy] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._feed = feed
        self._profiles = profiles or ProfileService(db)
        self._attachments = attachments
        self._clock = clock

    # =========================================================================
    # Rooms & participants
    # =========================================================================

    def find_room(self, room_id: str, include_deleted: bool = False) -> Optional[ChatRoom]:
        row = self._db.fetch_dict(
            "SELECT id, name, type, created_at, updated_at, deleted_at FROM chat_rooms WHERE id = ?",
            [room_id],
        )
        if row is None:
            return None
        room = ChatRoom.model_validate(row)
        if room.deleted_at is not None and not include_deleted:
            return None
        return room

    def get_room(self, room_id: str) -> ChatRoom:
        """Return a live room.

        Raises:
            NotFound: If the room does not exist or was soft-deleted.
        """
        room = self.find_room(room_id)
        if room is None:
            raise NotFound("Room not found")
        return room

    def get_participant(self, room_id: str, user_id: str) -> Optional[Participant]:
        row = self._db.fetch_dict(
            f"SELECT {PARTICIPANT_COLUMNS} FROM chat_room_participants WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        )
        return Participant.model_validate(row) if row else None

    def is_participant(self, room_id: str, user_id: str) -> bool:
        return self.get_participant(room_id, user_id) is not None

    def require_participant(self, room_id: str, user_id: str) -> Participant:
        """Return the membership row or raise Forbidden."""
        participant = self.get_participant(room_id, user_id)
        if participant is None:
            raise Forbidden("Access denied")
        return participant

    def list_participants(self, room_id: str) -> List[Participant]:
        """Participants of a room (join order), with their profiles."""
        rows = self._db.fetch_dicts(
            f"SELECT {PARTICIPANT_COLUMNS} FROM chat_room_participants "
            "WHERE room_id = ? ORDER BY joined_at, user_id",
            [room_id],
        )
        participants = [Participant.model_validate(row) for row in rows]
        profiles = self._profiles.get_profiles(p.user_id for p in participants)
        for participant in participants:
            participant.user = profiles.get(participant.user_id)
        return participants

    # =========================================================================
    # Append
    # =========================================================================

    def append(
        self,
        room_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        *,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        file_type: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> ChatMessage:
        """Persist a new message and publish it on the change feed.

        Args:
            room_id: Target room.
            sender_id: Author; must be a participant of the room.
            content: Message body (text, or caption for attachments).
            message_type: text, image, file or system.
            file_url, file_name, file_size, file_type: Attachment metadata.
            reply_to_id: Optional message in the same room being answered.

        Returns:
            The stored message with server-assigned id, seq and created_at,
            enriched with the sender profile.

        Raises:
            InvalidInput: Empty content.
            PayloadTooLarge / UnsupportedMediaType: Attachment outside policy.
            NotFound: Room missing/soft-deleted, or reply target not in room.
            Forbidden: Sender is not a participant.
        """
        if not content or not content.strip():
            raise InvalidInput("Message content cannot be empty")
        if self._attachments is not None and (file_size is not None or file_type is not None):
            self._attachments.check(file_size, file_type)

        with self._db.transaction():
            self.get_room(room_id)
            self.require_participant(room_id, sender_id)
            if reply_to_id and self.get_message(reply_to_id, room_id) is None:
                raise NotFound("Reply message not found")

            message_id = str(uuid.uuid4())
            created_at = self._next_timestamp(room_id)
            row = self._db.fetch_one(
                """
                INSERT INTO chat_messages
                (id, room_id, sender_id, content, message_type, file_url, file_name,
                 file_size, file_type, reply_to_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING seq
                """,
                [
                    message_id,
                    room_id,
                    sender_id,
                    content,
                    message_type.value,
                    file_url,
                    file_name,
                    file_size,
                    file_type,
                    reply_to_id,
                    to_storage(created_at),
                ],
            )
            self._db.execute(
                "INSERT INTO chat_message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
                [message_id, sender_id, to_storage(created_at)],
            )
            self._db.execute(
                "UPDATE chat_rooms SET updated_at = ? WHERE id = ?",
                [to_storage(created_at), room_id],
            )

        message = ChatMessage(
            id=message_id,
            seq=row[0],
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            file_url=file_url,
            file_name=file_name,
            file_size=file_size,
            file_type=file_type,
            reply_to_id=reply_to_id,
            created_at=created_at,
            read_by=[sender_id],
        )
        logger.info(f"[Store] Message {message_id} appended to room {room_id} by {sender_id}")
        self._publish(MESSAGES_TABLE, ChangeKind.INSERT, room_id, message.model_dump(mode="json"))

        message.sender = self._profiles.get_profile(sender_id)
        return message

    def _next_timestamp(self, room_id: str) -> datetime:
        """Server time, bumped past the room's newest message if needed."""
        now = ensure_utc(self._clock())
        row = self._db.fetch_one(
            "SELECT max(created_at) FROM chat_messages WHERE room_id = ?",
            [room_id],
        )
        latest = row[0] if row else None
        if latest is not None:
            latest = ensure_utc(latest)
            if now <= latest:
                now = latest + TIMESTAMP_STEP
        return now

    # =========================================================================
    # Reads
    # =========================================================================

    def get_message(self, message_id: str, room_id: Optional[str] = None) -> Optional[ChatMessage]:
        sql = f"SELECT {MESSAGE_COLUMNS} FROM chat_messages WHERE id = ?"
        params: List[Any] = [message_id]
        if room_id is not None:
            sql += " AND room_id = ?"
            params.append(room_id)
        messages = self._hydrate(self._db.fetch_dicts(sql, params))
        return messages[0] if messages else None

    def latest_message(self, room_id: str) -> Optional[ChatMessage]:
        messages = self._hydrate(self._db.fetch_dicts(
            f"SELECT {MESSAGE_COLUMNS} FROM chat_messages WHERE room_id = ? "
            "ORDER BY created_at DESC, seq DESC LIMIT 1",
            [room_id],
        ))
        return messages[0] if messages else None

    def watermark_for(self, room_id: str, message_id: str) -> Watermark:
        """Position of *message_id* in the room's log.

        Raises:
            NotFound: If the message is not in this room.
        """
        row = self._db.fetch_one(
            "SELECT created_at, seq FROM chat_messages WHERE id = ? AND room_id = ?",
            [message_id, room_id],
        )
        if row is None:
            raise NotFound("Message not found")
        return Watermark(ensure_utc(row[0]), row[1])

    def list_since(
        self,
        room_id: str,
        watermark: Optional[Union[Watermark, datetime]],
        limit: int,
    ) -> List[ChatMessage]:
        """Messages strictly after *watermark*, oldest first, at most *limit*.

        Used for the initial load and for gap-fill after a reconnect. The
        result depends only on the arguments and the log contents, so a
        retry with the same watermark returns the same prefix.
        """
        if limit < 1:
            return []
        sql = f"SELECT {MESSAGE_COLUMNS} FROM chat_messages WHERE room_id = ?"
        params: List[Any] = [room_id]
        if isinstance(watermark, datetime):
            watermark = Watermark(watermark)
        if watermark is not None:
            ts = to_storage(watermark.created_at)
            if watermark.seq is None:
                sql += " AND created_at > ?"
                params.append(ts)
            else:
                sql += " AND (created_at > ? OR (created_at = ? AND seq > ?))"
                params.extend([ts, ts, watermark.seq])
        sql += " ORDER BY created_at ASC, seq ASC LIMIT ?"
        params.append(limit)
        return self._hydrate(self._db.fetch_dicts(sql, params))

    def list_page(self, room_id: str, page: int = 1, limit: int = 50) -> Tuple[List[ChatMessage], bool]:
        """Page through history newest-first.

        Args:
            room_id: The room ID.
            page: 1-based page number (page 1 = most recent messages).
            limit: Page size.

        Returns:
            Tuple of (messages oldest-first within the page, has_more).
        """
        page = max(page, 1)
        offset = (page - 1) * limit
        rows = self._db.fetch_dicts(
            f"SELECT {MESSAGE_COLUMNS} FROM chat_messages WHERE room_id = ? "
            "ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
            [room_id, limit + 1, offset],
        )
        has_more = len(rows) > limit
        messages = self._hydrate(rows[:limit])
        messages.reverse()
        return messages, has_more

    def _hydrate(self, rows: List[Dict[str, Any]]) -> List[ChatMessage]:
        """Validate rows and attach sender profiles and read receipts."""
        messages = [ChatMessage.model_validate(row) for row in rows]
        if not messages:
            return messages

        ids = [m.id for m in messages]
        read_rows = self._db.fetch_all(
            f"SELECT message_id, user_id FROM chat_message_reads "
            f"WHERE message_id IN ({placeholders(len(ids))}) ORDER BY read_at, user_id",
            ids,
        )
        read_by: Dict[str, List[str]] = {}
        for message_id, user_id in read_rows:
            read_by.setdefault(message_id, []).append(user_id)

        profiles = self._profiles.get_profiles(m.sender_id for m in messages)
        for message in messages:
            message.read_by = read_by.get(message.id, [])
            message.sender = profiles.get(message.sender_id)
        return messages

    # =========================================================================
    # Read watermarks
    # =========================================================================

    def mark_read(
        self,
        room_id: str,
        user_id: str,
        upto: Optional[datetime] = None,
        message_id: Optional[str] = None,
    ) -> Participant:
        """Advance the user's read watermark.

        The target is, in priority order: *message_id*'s timestamp, *upto*
        (clamped to now), or the room's latest message. Watermarks never
        regress; an older target returns the unchanged row. An empty room
        is a successful no-op.

        Raises:
            Forbidden: If the user is not a participant.
            NotFound: If *message_id* is not in the room.
        """
        with self._db.transaction():
            participant = self.require_participant(room_id, user_id)

            if message_id is not None:
                target_message = self.get_message(message_id, room_id)
                if target_message is None:
                    raise NotFound("Message not found")
                target = target_message.created_at
            elif upto is not None:
                target = min(ensure_utc(upto), ensure_utc(self._clock()))
                target_message = self._latest_at_or_before(room_id, target)
            else:
                target_message = self.latest_message(room_id)
                if target_message is None:
                    return participant
                target = target_message.created_at

            if participant.last_read_at is not None and target <= participant.last_read_at:
                return participant

            last_read_message_id = target_message.id if target_message else participant.last_read_message_id
            self._db.execute(
                "UPDATE chat_room_participants SET last_read_at = ?, last_read_message_id = ? "
                "WHERE room_id = ? AND user_id = ?",
                [to_storage(target), last_read_message_id, room_id, user_id],
            )
            self._db.execute(
                """
                INSERT INTO chat_message_reads (message_id, user_id, read_at)
                SELECT id, ?, ? FROM chat_messages WHERE room_id = ? AND created_at <= ?
                ON CONFLICT DO NOTHING
                """,
                [user_id, to_storage(self._clock()), room_id, to_storage(target)],
            )
            updated = self.get_participant(room_id, user_id)

        logger.debug(f"[Store] Watermark for {user_id} in room {room_id} advanced to {target}")
        self._publish(PARTICIPANTS_TABLE, ChangeKind.UPDATE, room_id, updated.model_dump(mode="json"))
        return updated

    def _latest_at_or_before(self, room_id: str, ts: datetime) -> Optional[ChatMessage]:
        messages = self._hydrate(self._db.fetch_dicts(
            f"SELECT {MESSAGE_COLUMNS} FROM chat_messages WHERE room_id = ? AND created_at <= ? "
            "ORDER BY created_at DESC, seq DESC LIMIT 1",
            [room_id, to_storage(ts)],
        ))
        return messages[0] if messages else None

    def read_status(self, user_id: str, room_id: Optional[str] = None) -> List[Participant]:
        """The caller's watermark rows, most recently read first."""
        if room_id is not None:
            participant = self.get_participant(room_id, user_id)
            return [participant] if participant else []
        rows = self._db.fetch_dicts(
            f"SELECT {PARTICIPANT_COLUMNS} FROM chat_room_participants WHERE user_id = ? "
            "ORDER BY last_read_at DESC NULLS LAST, room_id LIMIT ?",
            [user_id, READ_STATUS_LIMIT],
        )
        return [Participant.model_validate(row) for row in rows]

    # =========================================================================
    # Change feed
    # =========================================================================

    def _publish(self, table: str, kind: ChangeKind, room_id: str, row: Dict[str, Any]) -> None:
        if self._feed is None:
            return
        self._feed.publish(ChangeEvent(table=table, kind=kind, room_id=room_id, row=row))
