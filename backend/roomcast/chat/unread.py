"""Unread accounting derived from read watermarks.

A message counts as unread for a user when it was sent by someone else and
its ``created_at`` is after the user's ``last_read_at`` in that room (or the
user has never read the room). Nothing is stored; every figure is computed
from ``chat_messages`` and ``chat_room_participants`` on demand.
"""
import logging

from roomcast.db import Database
from roomcast.errors import UpstreamFailure

from .schemas import UnreadRoomCount, UnreadSummary

logger = logging.getLogger(__name__)

_UNREAD_PREDICATE = """
    m.room_id = p.room_id
    AND m.sender_id <> p.user_id
    AND (p.last_read_at IS NULL OR m.created_at > p.last_read_at)
"""


class UnreadService:
    """Per-user unread counters."""

    def __init__(self, db: Database, summary_limit: int = 50) -> None:
        self._db = db
        self._summary_limit = summary_limit

    def unread_count(self, user_id: str, room_id: str) -> int:
        """Unread messages for *user_id* in *room_id*; 0 for non-participants."""
        row = self._db.fetch_one(
            f"""
            SELECT count(m.id)
            FROM chat_room_participants p
            JOIN chat_messages m ON {_UNREAD_PREDICATE}
            WHERE p.room_id = ? AND p.user_id = ?
            """,
            [room_id, user_id],
        )
        return int(row[0]) if row else 0

    def unread_for_room(self, user_id: str, room_id: str) -> UnreadRoomCount:
        """Unread count plus the newest message time in the room.

        Non-participants get the zeroed count; nothing about the room leaks.
        """
        row = self._db.fetch_dict(
            """
            SELECT r.id AS room_id, coalesce(r.name, 'Unknown Room') AS room_name,
                   (SELECT max(created_at) FROM chat_messages WHERE room_id = r.id) AS "latestMessageTime"
            FROM chat_rooms r
            JOIN chat_room_participants p ON p.room_id = r.id AND p.user_id = ?
            WHERE r.id = ?
            """,
            [user_id, room_id],
        )
        if row is None:
            return UnreadRoomCount(room_id=room_id)
        return UnreadRoomCount(unreadCount=self.unread_count(user_id, room_id), **row)

    def unread_summary(self, user_id: str) -> UnreadSummary:
        """Unread counts for every live room the user participates in.

        Rooms are ordered by their latest message (newest first) and capped
        at the configured limit. Never raises: a store failure is logged and
        the empty summary is returned.
        """
        try:
            rows = self._db.fetch_dicts(
                f"""
                SELECT * FROM (
                    SELECT r.id AS room_id,
                           coalesce(r.name, 'Unknown Room') AS room_name,
                           r.created_at AS room_created_at,
                           (SELECT count(m.id) FROM chat_messages m WHERE {_UNREAD_PREDICATE}) AS "unreadCount",
                           (SELECT max(created_at) FROM chat_messages WHERE room_id = r.id) AS "latestMessageTime"
                    FROM chat_room_participants p
                    JOIN chat_rooms r ON r.id = p.room_id
                    WHERE p.user_id = ? AND r.deleted_at IS NULL
                )
                ORDER BY coalesce(latestMessageTime, room_created_at) DESC, room_id
                LIMIT ?
                """,
                [user_id, self._summary_limit],
            )
        except UpstreamFailure as e:
            logger.error(f"[Unread] Summary for {user_id} failed, returning empty summary: {e}")
            return UnreadSummary.empty()

        room_counts = [
            UnreadRoomCount(
                room_id=row["room_id"],
                room_name=row["room_name"],
                unreadCount=int(row["unreadCount"]),
                latestMessageTime=row["latestMessageTime"],
            )
            for row in rows
        ]
        total = sum(room.unreadCount for room in room_counts)
        return UnreadSummary(
            hasUnreadMessages=total > 0,
            totalUnreadCount=total,
            roomCounts=room_counts,
        )
