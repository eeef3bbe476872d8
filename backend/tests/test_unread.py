"""Tests for unread accounting (service and GET /chat/unread)."""
import pytest

from roomcast.chat.schemas import CreateRoomRequest, RoomType
from roomcast.chat.unread import UnreadService
from roomcast.dependencies import get_unread_service
from roomcast.errors import UpstreamFailure
from roomcast.main import app


@pytest.fixture
def unread(db):
    return UnreadService(db)


class TestUnreadService:
    """Tests for UnreadService."""

    def test_foreign_append_increments_by_one(self, store, unread, direct_room):
        assert unread.unread_count("bob", direct_room.id) == 0

        store.append(direct_room.id, "alice", "hello")

        assert unread.unread_count("bob", direct_room.id) == 1
        assert unread.unread_count("alice", direct_room.id) == 0

    def test_mark_read_clears_count(self, store, unread, direct_room):
        store.append(direct_room.id, "alice", "one")
        store.append(direct_room.id, "alice", "two")
        assert unread.unread_count("bob", direct_room.id) == 2

        store.mark_read(direct_room.id, "bob")

        assert unread.unread_count("bob", direct_room.id) == 0
        store.append(direct_room.id, "alice", "three")
        assert unread.unread_count("bob", direct_room.id) == 1

    def test_non_participant_sees_zero(self, store, unread, direct_room):
        store.append(direct_room.id, "alice", "hello")
        assert unread.unread_count("carol", direct_room.id) == 0

    def test_non_participant_room_count_reveals_nothing(self, store, unread, rooms):
        room = rooms.create_room(
            "alice", CreateRoomRequest(type=RoomType.GROUP, name="Private", participant_ids=["bob"])
        )
        store.append(room.id, "alice", "hello")

        count = unread.unread_for_room("carol", room.id)

        assert count.unreadCount == 0
        assert count.latestMessageTime is None
        assert count.room_name == "Unknown Room"

    def test_unread_for_room_reports_latest_time(self, store, unread, direct_room):
        message = store.append(direct_room.id, "alice", "hello")

        count = unread.unread_for_room("bob", direct_room.id)

        assert count.room_id == direct_room.id
        assert count.unreadCount == 1
        assert count.latestMessageTime == message.created_at
        assert count.room_name == "Unknown Room"

    def test_summary_totals_and_order(self, store, rooms, unread, direct_room):
        group = rooms.create_room(
            "carol", CreateRoomRequest(type=RoomType.GROUP, name="Team", participant_ids=["bob"])
        )
        store.append(direct_room.id, "alice", "first")
        store.append(group.id, "carol", "second")
        store.append(group.id, "carol", "third")

        summary = unread.unread_summary("bob")

        assert summary.hasUnreadMessages is True
        assert summary.totalUnreadCount == 3
        assert [r.room_id for r in summary.roomCounts] == [group.id, direct_room.id]
        assert summary.roomCounts[0].room_name == "Team"
        assert summary.roomCounts[0].unreadCount == 2

    def test_summary_excludes_deleted_rooms(self, store, rooms, unread, direct_room):
        store.append(direct_room.id, "alice", "hello")
        rooms.leave(direct_room.id, "alice")

        summary = unread.unread_summary("bob")

        assert summary.roomCounts == []
        assert summary.totalUnreadCount == 0

    def test_summary_is_capped(self, db, store, rooms, direct_room):
        rooms.create_room("bob", CreateRoomRequest(type=RoomType.DIRECT, participant_ids=["carol"]))

        summary = UnreadService(db, summary_limit=1).unread_summary("bob")

        assert len(summary.roomCounts) == 1

    def test_summary_degrades_on_store_failure(self, db, unread, monkeypatch):
        def broken(*args, **kwargs):
            raise UpstreamFailure("connection lost")

        monkeypatch.setattr(db, "fetch_dicts", broken)

        summary = unread.unread_summary("bob")

        assert summary.hasUnreadMessages is False
        assert summary.totalUnreadCount == 0
        assert summary.roomCounts == []


class TestUnreadEndpoint:
    """Tests for GET /chat/unread."""

    def test_room_count_with_cache_headers(self, api_client, auth, store, direct_room):
        store.append(direct_room.id, "alice", "hello")

        response = api_client.get("/chat/unread", params={"room_id": direct_room.id}, headers=auth("bob"))

        assert response.status_code == 200
        body = response.json()
        assert body["room_id"] == direct_room.id
        assert body["unreadCount"] == 1
        assert body["latestMessageTime"] is not None
        assert response.headers["cache-control"] == "private, max-age=10, must-revalidate"
        assert response.headers["x-content-type-options"] == "nosniff"

    def test_summary_with_cache_headers(self, api_client, auth, store, direct_room):
        store.append(direct_room.id, "alice", "hello")

        response = api_client.get("/chat/unread", headers=auth("bob"))

        assert response.status_code == 200
        body = response.json()
        assert body["hasUnreadMessages"] is True
        assert body["totalUnreadCount"] == 1
        assert body["roomCounts"][0]["room_id"] == direct_room.id
        assert response.headers["cache-control"] == "private, max-age=15, must-revalidate"

    def test_unauthenticated_summary_gets_zeroed_body(self, api_client):
        response = api_client.get("/chat/unread")

        assert response.status_code == 401
        body = response.json()
        assert body["hasUnreadMessages"] is False
        assert body["totalUnreadCount"] == 0
        assert body["roomCounts"] == []
        assert body["error"] == "Unauthorized"

    def test_non_participant_room_count_is_zeroed(self, api_client, auth, store, direct_room):
        store.append(direct_room.id, "alice", "hello")

        response = api_client.get("/chat/unread", params={"room_id": direct_room.id}, headers=auth("carol"))

        assert response.status_code == 200
        assert response.json()["unreadCount"] == 0
        assert response.json()["latestMessageTime"] is None

    def test_unauthenticated_room_gets_zeroed_body(self, api_client):
        response = api_client.get("/chat/unread", params={"room_id": "r1"})

        assert response.status_code == 401
        assert response.json()["unreadCount"] == 0

    def test_room_failure_returns_500_with_defaults(self, api_client, auth, direct_room):
        class BrokenUnread:
            def unread_for_room(self, user_id, room_id):
                raise UpstreamFailure("boom")

        app.dependency_overrides[get_unread_service] = lambda: BrokenUnread()
        try:
            response = api_client.get("/chat/unread", params={"room_id": direct_room.id}, headers=auth("bob"))
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        body = response.json()
        assert body["unreadCount"] == 0
        assert body["error"] == "Failed to fetch unread count"

    def test_end_to_end_read_clears_badge(self, api_client, auth, direct_room):
        sent = api_client.post(
            "/chat/messages",
            json={"room_id": direct_room.id, "content": "hello"},
            headers=auth("alice"),
        )
        assert sent.status_code == 200

        before = api_client.get("/chat/unread", params={"room_id": direct_room.id}, headers=auth("bob"))
        read = api_client.post(
            "/chat/read",
            json={"room_id": direct_room.id, "upto": sent.json()["message"]["created_at"]},
            headers=auth("bob"),
        )
        after = api_client.get("/chat/unread", params={"room_id": direct_room.id}, headers=auth("bob"))

        assert before.json()["unreadCount"] == 1
        assert read.status_code == 200
        assert read.json()["success"] is True
        assert read.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert after.json()["unreadCount"] == 0
