"""Session provider and profile lookup.

User accounts are owned by an external identity provider. Roomcast only keeps
what the chat core needs at its boundary:

* ``profiles``: id/username/avatar used to enrich messages and typing rows;
* ``sessions``: opaque bearer tokens resolving to a user id.
"""
import logging
import secrets
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Set

from roomcast.chat.schemas import Profile
from roomcast.clock import Clock, to_storage, utcnow
from roomcast.db import Database, placeholders

logger = logging.getLogger(__name__)


class ProfileService:
    """Read/write access to the local profile copy."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    def upsert_profile(self, user_id: str, username: str, avatar_url: Optional[str] = None) -> Profile:
        """Create or refresh a profile row (called by the identity sync)."""
        self._db.execute(
            """
            INSERT INTO profiles (id, username, avatar_url, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET username = excluded.username, avatar_url = excluded.avatar_url
            """,
            [user_id, username, avatar_url, to_storage(self._clock())],
        )
        return Profile(id=user_id, username=username, avatar_url=avatar_url)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        row = self._db.fetch_dict(
            "SELECT id, username, avatar_url FROM profiles WHERE id = ?",
            [user_id],
        )
        return Profile.model_validate(row) if row else None

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
        """Batch lookup; unknown ids are simply absent from the result."""
        ids: List[str] = sorted(set(user_ids))
        if not ids:
            return {}
        rows = self._db.fetch_dicts(
            f"SELECT id, username, avatar_url FROM profiles WHERE id IN ({placeholders(len(ids))})",
            ids,
        )
        return {row["id"]: Profile.model_validate(row) for row in rows}

    def existing_ids(self, user_ids: Iterable[str]) -> Set[str]:
        return set(self.get_profiles(user_ids))


class SessionService:
    """Issues and resolves bearer tokens."""

    def __init__(self, db: Database, ttl_hours: int = 24 * 7, clock: Clock = utcnow) -> None:
        self._db = db
        self._ttl = timedelta(hours=ttl_hours)
        self._clock = clock
        self._profiles = ProfileService(db, clock)

    def create_session(self, user_id: str) -> str:
        """Issue a new token for *user_id*.

        Returns:
            The opaque token string.
        """
        token = secrets.token_urlsafe(32)
        now = self._clock()
        self._db.execute(
            "INSERT INTO sessions (token, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
            [token, user_id, to_storage(now), to_storage(now + self._ttl)],
        )
        logger.info(f"Session issued for user {user_id}")
        return token

    def resolve(self, token: Optional[str]) -> Optional[Profile]:
        """Return the profile behind *token*, or None if unknown or expired."""
        if not token:
            return None
        row = self._db.fetch_one(
            "SELECT user_id FROM sessions WHERE token = ? AND expires_at > ?",
            [token, to_storage(self._clock())],
        )
        if row is None:
            return None
        return self._profiles.get_profile(row[0])

    def revoke(self, token: str) -> None:
        self._db.execute("DELETE FROM sessions WHERE token = ?", [token])
