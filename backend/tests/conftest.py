"""Shared test fixtures and configuration for backend tests.

Every test gets a fresh in-memory DuckDB, a fresh change feed and its own
upload directory; users alice, bob and carol exist with session tokens.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from roomcast.auth.service import ProfileService, SessionService
from roomcast.chat.rooms import RoomService
from roomcast.chat.schemas import CreateRoomRequest, RoomType
from roomcast.chat.store import MessageStore
from roomcast.config import AppConfig, set_config
from roomcast.db import Database
from roomcast.files.schemas import AttachmentPolicy
from roomcast.files.service import BlobStorageService
from roomcast.main import app
from roomcast.realtime.feed import ChangeFeed

USERS = {
    "alice": "Alice",
    "bob": "Bob",
    "carol": "Carol",
}


class FakeClock:
    """Controllable time source for services that accept ``clock=``."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def _reset_singletons():
    Database.reset_instance()
    ChangeFeed.reset_instance()
    BlobStorageService.reset_instance()


@pytest.fixture(autouse=True)
def app_config(tmp_path):
    """Point the app at an in-memory database and a temp upload dir."""
    config = AppConfig()
    config.database.path = ":memory:"
    config.uploads.upload_dir = str(tmp_path / "uploads")
    set_config(config)
    _reset_singletons()

    yield config

    _reset_singletons()
    set_config(None)


@pytest.fixture
def db(app_config):
    return Database.get_instance(app_config.database.path)


@pytest.fixture
def feed(app_config):
    return ChangeFeed.get_instance(app_config.chat.subscriber_queue_size)


@pytest.fixture
def profiles(db):
    service = ProfileService(db)
    for user_id, username in USERS.items():
        service.upsert_profile(user_id, username)
    return service


@pytest.fixture
def store(db, feed, profiles, app_config):
    return MessageStore(
        db,
        feed=feed,
        profiles=profiles,
        attachments=AttachmentPolicy.from_settings(app_config.uploads),
    )


@pytest.fixture
def rooms(db, store, profiles):
    return RoomService(db, store, profiles)


@pytest.fixture
def direct_room(rooms):
    """Direct room between alice and bob with no messages."""
    return rooms.create_room("alice", CreateRoomRequest(type=RoomType.DIRECT, participant_ids=["bob"]))


@pytest.fixture
def tokens(db, profiles):
    sessions = SessionService(db)
    return {user_id: sessions.create_session(user_id) for user_id in USERS}


@pytest.fixture
def auth(tokens):
    """auth("alice") -> Authorization header dict."""
    def _headers(user_id):
        return {"Authorization": f"Bearer {tokens[user_id]}"}
    return _headers


@pytest.fixture
def api_client(app_config):
    """Provide a TestClient for the main FastAPI app."""
    return TestClient(app)
