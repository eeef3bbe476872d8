"""Typing presence tracker.

Each (room, user) pair is either idle (no row) or typing (a row whose
``last_activity`` is refreshed on every keystroke batch). A row is live only
while ``last_activity`` is within the TTL window; readers filter stale rows at
query time and ``typing_cleanup_loop`` deletes them in the background.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Callable, List

from roomcast.auth.service import ProfileService
from roomcast.clock import Clock, ensure_utc, to_storage, utcnow
from roomcast.db import Database
from roomcast.errors import Forbidden, UpstreamFailure

from .schemas import TypingStatus

logger = logging.getLogger(__name__)


class TypingTracker:
    """Reads and writes ``chat_typing_status``.

    Args:
        db: Shared database.
        profiles: Profile lookup used to enrich typing rows.
        ttl_seconds: Liveness window of a typing row.
        clock: Time source; injectable for tests.
    """

    def __init__(
        self,
        db: Database,
        profiles: ProfileService,
        ttl_seconds: float = 5.0,
        clock: Clock = utcnow,
    ) -> None:
        self._db = db
        self._profiles = profiles
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def _require_participant(self, room_id: str, user_id: str) -> None:
        row = self._db.fetch_one(
            "SELECT 1 FROM chat_room_participants WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        )
        if row is None:
            raise Forbidden("Access denied")

    def start_typing(self, room_id: str, user_id: str) -> None:
        self._require_participant(room_id, user_id)
        self._db.execute(
            """
            INSERT INTO chat_typing_status (room_id, user_id, is_typing, last_activity)
            VALUES (?, ?, TRUE, ?)
            ON CONFLICT (room_id, user_id) DO UPDATE
            SET is_typing = TRUE, last_activity = excluded.last_activity
            """,
            [room_id, user_id, to_storage(self._clock())],
        )
        logger.debug(f"[Typing] {user_id} typing in room {room_id}")

    def stop_typing(self, room_id: str, user_id: str) -> None:
        self._require_participant(room_id, user_id)
        self._db.execute(
            "DELETE FROM chat_typing_status WHERE room_id = ? AND user_id = ?",
            [room_id, user_id],
        )
        logger.debug(f"[Typing] {user_id} stopped typing in room {room_id}")

    def set_typing(self, room_id: str, user_id: str, is_typing: bool) -> None:
        if is_typing:
            self.start_typing(room_id, user_id)
        else:
            self.stop_typing(room_id, user_id)

    def typing_users(self, room_id: str, viewer_id: str) -> List[TypingStatus]:
        """Users currently typing in *room_id*, excluding *viewer_id*.

        Rows whose last activity is at or before ``now - ttl`` are ignored.
        A store failure yields an empty list.

        Raises:
            Forbidden: If the viewer is not a participant.
        """
        cutoff = ensure_utc(self._clock()) - self._ttl
        try:
            self._require_participant(room_id, viewer_id)
            rows = self._db.fetch_dicts(
                """
                SELECT room_id, user_id, is_typing, last_activity
                FROM chat_typing_status
                WHERE room_id = ? AND is_typing AND user_id <> ? AND last_activity > ?
                ORDER BY last_activity DESC, user_id
                """,
                [room_id, viewer_id, to_storage(cutoff)],
            )
            statuses = [TypingStatus.model_validate(row) for row in rows]
            profiles = self._profiles.get_profiles(s.user_id for s in statuses)
        except UpstreamFailure as e:
            logger.error(f"[Typing] Failed to read typing state for room {room_id}: {e}")
            return []

        for status in statuses:
            status.user = profiles.get(status.user_id)
        return statuses

    def purge_expired(self) -> int:
        """Delete rows older than the TTL window; returns how many went."""
        cutoff = ensure_utc(self._clock()) - self._ttl
        rows = self._db.fetch_all(
            "DELETE FROM chat_typing_status WHERE last_activity <= ? RETURNING room_id",
            [to_storage(cutoff)],
        )
        return len(rows)


async def typing_cleanup_loop(
    tracker_factory: Callable[[], TypingTracker],
    interval_seconds: float,
) -> None:
    """Periodically purge expired typing rows until cancelled."""
    logger.info(f"[Typing] Cleanup task started (every {interval_seconds}s)")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            purged = tracker_factory().purge_expired()
        except UpstreamFailure as e:
            logger.error(f"[Typing] Cleanup failed: {e}")
            continue
        if purged:
            logger.info(f"[Typing] Purged {purged} expired typing rows")
