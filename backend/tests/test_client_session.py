"""Tests for the ChatSession controller and the API client it drives."""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from roomcast.chat.schemas import RoomType
from roomcast.client import ChatApiClient, ChatApiError, ChatSession, ConnectionStatus, ReconnectPolicy
from roomcast.main import app
from roomcast.realtime.bridge import format_sse

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def message_json(message_id, seconds, room_id="r1", sender="bob"):
    return {
        "id": message_id,
        "seq": seconds,
        "room_id": room_id,
        "sender_id": sender,
        "content": f"content of {message_id}",
        "message_type": "text",
        "created_at": (T0 + timedelta(seconds=seconds)).isoformat().replace("+00:00", "Z"),
        "read_by": [sender],
    }


def sse_body(*payloads):
    frames = []
    for payload in payloads:
        event_id = payload["message"]["id"] if payload.get("type") == "new_message" else None
        frames.append(format_sse(payload, event_id=event_id))
    return "".join(frames).encode()


class FakeServer:
    """Scripted responses keyed by (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def script(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def handler(self, request):
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": "Not found"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def requests_to(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def server():
    server = FakeServer()
    server.script("GET", "/chat/messages", httpx.Response(200, json={
        "messages": [message_json("m1", 1)], "page": 1, "limit": 50, "hasMore": False,
    }))
    return server


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_session(server, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def _make(**policy):
        api = ChatApiClient("http://chat.test", "token-alice", transport=httpx.MockTransport(server.handler))
        return ChatSession(
            api,
            "alice",
            policy=ReconnectPolicy(rng=lambda: 0.0, **policy),
            page_size=2,
            sleep=fake_sleep,
        )

    return _make


class TestSending:
    """Tests for ChatSession.send_message."""

    @pytest.mark.asyncio
    async def test_success_buffers_and_clears_draft(self, server, make_session):
        server.script("POST", "/chat/messages", httpx.Response(200, json={
            "message": message_json("m2", 2, sender="alice"),
        }))
        session = make_session()
        await session.switch_room("r1")
        session.set_draft("hello")

        message = await session.send_message()

        assert message.id == "m2"
        assert session.state.draft == ""
        assert [m.id for m in session.state.messages] == ["m1", "m2"]
        sent = json.loads(server.requests_to("/chat/messages")[-1].content)
        assert sent["content"] == "hello"
        assert server.requests_to("/chat/messages")[-1].headers["authorization"] == "Bearer token-alice"

    @pytest.mark.asyncio
    async def test_failure_sets_notice_and_keeps_draft(self, server, make_session):
        server.script("POST", "/chat/messages", httpx.Response(403, json={"error": "Access denied"}))
        session = make_session()
        await session.switch_room("r1")
        session.set_draft("hello")

        assert await session.send_message() is None

        assert session.state.notice == "Message not sent: Access denied"
        assert session.state.draft == "hello"
        assert [m.id for m in session.state.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_transport_failure_is_a_notice(self, server, make_session):
        server.script("POST", "/chat/messages", httpx.ConnectError("unreachable"))
        session = make_session()
        await session.switch_room("r1")

        await session.send_message("hi")

        assert session.state.notice.startswith("Message not sent: Request failed")

    @pytest.mark.asyncio
    async def test_listeners_see_each_snapshot(self, make_session):
        session = make_session()
        seen = []
        unsubscribe = session.add_listener(seen.append)

        session.set_draft("a")
        unsubscribe()
        session.set_draft("ab")

        assert [s.draft for s in seen] == ["a"]

    @pytest.mark.asyncio
    async def test_unsubscribe_twice_is_harmless(self, make_session):
        session = make_session()
        seen = []
        unsubscribe = session.add_listener(seen.append)

        unsubscribe()
        unsubscribe()
        session.set_draft("a")

        assert seen == []

    @pytest.mark.asyncio
    async def test_image_attachment_is_sent_as_image(self, server, make_session):
        server.script("POST", "/chat/upload", httpx.Response(200, json={
            "url": "http://chat.test/files/chat/r1/1_cat.png",
            "path": "chat/r1/1_cat.png",
            "size": 3,
            "type": "image/png",
            "name": "cat.png",
        }))
        server.script("POST", "/chat/messages", httpx.Response(200, json={
            "message": dict(message_json("m2", 2, sender="alice"), message_type="image", content="cat.png"),
        }))
        session = make_session()
        await session.switch_room("r1")

        message = await session.send_attachment("cat.png", b"png", "image/png")

        assert message.message_type.value == "image"
        sent = json.loads(server.requests_to("/chat/messages")[-1].content)
        assert sent["message_type"] == "image"
        assert sent["file_type"] == "image/png"
        assert sent["file_url"] == "http://chat.test/files/chat/r1/1_cat.png"
        assert [m.id for m in session.state.messages] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_rejected_upload_is_a_notice(self, server, make_session):
        server.script("POST", "/chat/upload", httpx.Response(415, json={"error": "File type not allowed"}))
        session = make_session()
        await session.switch_room("r1")

        assert await session.send_attachment("x.exe", b"MZ", "application/x-msdownload") is None

        assert session.state.notice == "Message not sent: File type not allowed"
        assert server.requests_to("/chat/messages")[-1].method == "GET"


class TestSwitchRoom:
    @pytest.mark.asyncio
    async def test_switch_clears_previous_buffer(self, server, make_session):
        session = make_session()
        await session.switch_room("r1")
        assert len(session.state.messages) == 1

        server.routes[("GET", "/chat/messages")] = [httpx.Response(200, json={
            "messages": [], "page": 1, "limit": 2, "hasMore": False,
        })]
        await session.switch_room("r2")

        assert session.state.current_room_id == "r2"
        assert session.state.messages == ()


class TestListen:
    """Tests for the reconnecting event loop."""

    @pytest.mark.asyncio
    async def test_reconnect_resumes_and_gap_fills(self, server, make_session, sleeps):
        server.script(
            "GET",
            "/chat/events",
            httpx.Response(200, content=sse_body(
                {"type": "connected", "roomId": "r1"},
                {"type": "new_message", "message": message_json("m2", 2)},
            ), headers={"content-type": "text/event-stream"}),
            httpx.Response(200, content=sse_body({"type": "connected", "roomId": "r1"}),
                           headers={"content-type": "text/event-stream"}),
            httpx.Response(403, json={"error": "Access denied"}),
        )
        server.script("GET", "/chat/messages/since", httpx.Response(200, json={
            "messages": [message_json("m3", 3)],
        }))
        session = make_session()
        await session.switch_room("r1")

        await session.listen("r1")

        assert [m.id for m in session.state.messages] == ["m1", "m2", "m3"]
        streams = server.requests_to("/chat/events")
        assert "last-event-id" not in streams[0].headers
        assert streams[1].headers["last-event-id"] == "m2"
        gap_fill = server.requests_to("/chat/messages/since")[0]
        assert gap_fill.url.params["after_id"] == "m2"
        assert sleeps == [1.0, 1.0]
        assert session.state.connection == ConnectionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_backoff_grows_until_attempts_exhausted(self, server, make_session, sleeps):
        server.script("GET", "/chat/events", httpx.ConnectError("refused"))
        session = make_session(max_attempts=3)
        await session.switch_room("r1")

        await session.listen("r1")

        assert sleeps == [1.0, 2.0, 4.0]
        assert session.state.connection == ConnectionStatus.CLOSED

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, server, make_session, sleeps):
        server.script(
            "GET",
            "/chat/events",
            httpx.Response(500, json={"error": "Internal server error"}),
            httpx.Response(401, json={"error": "Unauthorized"}),
        )
        session = make_session()
        await session.switch_room("r1")

        await session.listen("r1")

        assert sleeps == [1.0]
        assert len(server.requests_to("/chat/events")) == 2

    @pytest.mark.asyncio
    async def test_malformed_events_are_ignored(self, make_session):
        session = make_session()
        await session.switch_room("r1")

        session.handle_event({"type": "new_message", "message": {"id": "broken"}})
        session.handle_event({"type": "ping"})

        assert [m.id for m in session.state.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_participant_update_marks_receipts(self, server, make_session):
        server.routes[("GET", "/chat/messages")] = [httpx.Response(200, json={
            "messages": [message_json("m1", 1, sender="alice")], "page": 1, "limit": 2, "hasMore": False,
        })]
        session = make_session()
        await session.switch_room("r1")

        session.handle_event({"type": "participant_update", "data": {
            "room_id": "r1",
            "user_id": "bob",
            "joined_at": T0.isoformat(),
            "last_read_at": (T0 + timedelta(seconds=5)).isoformat(),
            "last_read_message_id": "m1",
        }})

        assert session.state.messages[0].read_by == ["alice", "bob"]


class TestAgainstApp:
    """The client speaks the server's wire format end to end."""

    @pytest.mark.asyncio
    async def test_create_send_and_unread(self, tokens, profiles):
        transport = httpx.ASGITransport(app=app)
        async with ChatApiClient("http://testserver", tokens["alice"], transport=transport) as alice, \
                ChatApiClient("http://testserver", tokens["bob"], transport=transport) as bob:
            room = await alice.create_room(RoomType.DIRECT, ["bob"])
            sent = await alice.send_message(room.id, "hello")

            assert (await bob.unread_count(room.id)).unreadCount == 1
            history, has_more = await bob.list_messages(room.id)
            assert [m.id for m in history] == [sent.id]
            assert has_more is False
            assert (await bob.unread_summary()).totalUnreadCount == 0

            with pytest.raises(ChatApiError) as excinfo:
                await bob.send_message("no-such-room", "hi")
            assert excinfo.value.status_code == 404
