"""Chat session controller.

Owns one ``SessionState`` snapshot and drives it through the pure
transitions in ``state.py`` in response to user actions (switch room, send,
type) and to server events arriving over SSE.

Reconnect behaviour:
    When the event stream drops, the controller waits according to its
    ``ReconnectPolicy`` (1s, 2s, 4s ... capped at 30s, jittered), reconnects
    with ``Last-Event-ID``, then gap-fills with ``list_since`` from the newest
    buffered message so nothing sent while offline is missed. 401/403 stop
    the loop immediately.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from roomcast.chat.schemas import ChatMessage, MessageType, Participant

from . import state as transitions
from .api import ChatApiClient, ChatApiError
from .sse import ReconnectPolicy, SSEDecoder
from .state import ConnectionStatus, SessionState

logger = logging.getLogger(__name__)

Listener = Callable[[SessionState], None]

# Refusals that a retry cannot fix.
FATAL_STREAM_STATUSES = (400, 401, 403, 404)


class ChatSession:
    """Client-side controller for one signed-in user.

    Args:
        api: HTTP client bound to the user's session.
        user_id: The signed-in user's id.
        policy: Backoff schedule for the event stream.
        page_size: History/gap-fill batch size.
        sleep: Awaitable sleep; injectable for tests.
    """

    def __init__(
        self,
        api: ChatApiClient,
        user_id: str,
        policy: Optional[ReconnectPolicy] = None,
        page_size: int = 50,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._api = api
        self._policy = policy or ReconnectPolicy()
        self._page_size = page_size
        self._sleep = sleep
        self._state = SessionState(user_id=user_id)
        self._listeners: List[Listener] = []
        self._listen_task: Optional[asyncio.Task] = None
        self._last_event_id: Optional[str] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with every new snapshot; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, transition: Callable[..., SessionState], *args: Any) -> SessionState:
        new_state = transition(self._state, *args)
        if new_state is not self._state:
            self._state = new_state
            for listener in list(self._listeners):
                listener(new_state)
        return new_state

    # =========================================================================
    # User actions
    # =========================================================================

    async def load_rooms(self) -> None:
        rooms, _ = await self._api.list_rooms()
        self._apply(transitions.rooms_loaded, rooms)

    async def switch_room(self, room_id: str) -> None:
        """Make *room_id* current and load its newest page.

        The previous room's buffer is cleared before anything is fetched,
        and a running event stream is moved to the new room.
        """
        was_listening = self._listen_task is not None
        await self.stop_listening()
        self._last_event_id = None
        self._apply(transitions.room_switched, room_id)

        messages, has_more = await self._api.list_messages(room_id, page=1, limit=self._page_size)
        self._apply(transitions.page_loaded, room_id, messages, 1, has_more)
        if was_listening:
            self.start_listening()

    async def load_older(self) -> None:
        room_id = self._state.current_room_id
        if room_id is None or not self._state.has_more:
            return
        page = self._state.page + 1
        messages, has_more = await self._api.list_messages(room_id, page=page, limit=self._page_size)
        self._apply(transitions.page_loaded, room_id, messages, page, has_more)

    def set_draft(self, text: str) -> None:
        self._apply(transitions.draft_changed, text)

    async def send_message(
        self,
        content: Optional[str] = None,
        message_type: MessageType = MessageType.TEXT,
    ) -> Optional[ChatMessage]:
        """Send *content* (default: the draft) to the current room.

        Waits for the durable append. On failure a notice is recorded and
        the buffer and draft are left untouched.
        """
        room_id = self._state.current_room_id
        text = content if content is not None else self._state.draft
        if room_id is None:
            self._apply(transitions.send_failed, "no room selected")
            return None
        if not text.strip():
            return None

        try:
            message = await self._api.send_message(room_id, text, message_type)
        except ChatApiError as e:
            logger.warning(f"Send to room {room_id} failed: {e}")
            self._apply(transitions.send_failed, e.message)
            return None

        self._apply(transitions.message_sent, message)
        return message

    async def send_attachment(self, filename: str, content: bytes, mime_type: str) -> Optional[ChatMessage]:
        """Upload a file to the current room and post it as a message.

        Images are sent as ``image`` messages, anything else as ``file``.
        Upload and append failures are recorded as a notice.
        """
        room_id = self._state.current_room_id
        if room_id is None:
            self._apply(transitions.send_failed, "no room selected")
            return None

        try:
            upload = await self._api.upload(room_id, filename, content, mime_type)
            message = await self._api.send_message(room_id, upload.name, attachment=upload)
        except ChatApiError as e:
            logger.warning(f"Attachment {filename} to room {room_id} failed: {e}")
            self._apply(transitions.send_failed, e.message)
            return None

        self._apply(transitions.message_sent, message)
        return message

    async def mark_read(self) -> None:
        newest = self._state.newest_message
        if newest is None:
            return
        await self._api.mark_read(newest.room_id, message_id=newest.id)

    async def refresh_typing(self) -> None:
        room_id = self._state.current_room_id
        if room_id is None:
            return
        statuses = await self._api.typing(room_id)
        self._apply(transitions.typing_updated, room_id, statuses)

    def dismiss_notice(self) -> None:
        self._apply(transitions.notice_cleared)

    # =========================================================================
    # Server events
    # =========================================================================

    def handle_event(self, payload: Dict[str, Any]) -> None:
        """Apply one decoded SSE payload to the state."""
        event_type = payload.get("type")
        try:
            if event_type == "new_message":
                self._apply(transitions.message_received, ChatMessage.model_validate(payload["message"]))
            elif event_type == "participant_update":
                self._apply(transitions.receipts_updated, Participant.model_validate(payload["data"]))
        except (KeyError, ValidationError) as e:
            logger.warning(f"Ignoring malformed {event_type} event: {e}")

    def start_listening(self) -> asyncio.Task:
        """Run ``listen`` for the current room in a background task."""
        room_id = self._state.current_room_id
        if room_id is None:
            raise ValueError("No room selected")
        self._listen_task = asyncio.create_task(self.listen(room_id))
        return self._listen_task

    async def stop_listening(self) -> None:
        task, self._listen_task = self._listen_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._apply(transitions.connection_changed, ConnectionStatus.CLOSED)

    async def listen(self, room_id: str) -> None:
        """Consume the room's event stream, reconnecting with backoff.

        Returns when the server refuses the stream, when the retry budget is
        spent, or when the user switches to another room.
        """
        attempt = 0
        connected_before = False

        while not self._policy.exhausted(attempt):
            status = ConnectionStatus.RECONNECTING if connected_before else ConnectionStatus.CONNECTING
            self._apply(transitions.connection_changed, status)
            try:
                async with self._api.open_events(room_id, self._last_event_id) as response:
                    await self._api.check_stream(response)
                    self._apply(transitions.connection_changed, ConnectionStatus.OPEN)
                    attempt = 0
                    if connected_before:
                        await self._gap_fill(room_id)
                    connected_before = True
                    await self._consume(response)
            except ChatApiError as e:
                if e.status_code in FATAL_STREAM_STATUSES:
                    logger.warning(f"Event stream for room {room_id} refused: {e}")
                    self._apply(transitions.connection_changed, ConnectionStatus.CLOSED)
                    return
                logger.warning(f"Event stream for room {room_id} failed: {e}")
            except httpx.HTTPError as e:
                logger.warning(f"Event stream for room {room_id} dropped: {e}")

            if self._state.current_room_id != room_id:
                return
            delay = self._policy.delay(attempt)
            attempt += 1
            logger.info(f"Reconnecting to room {room_id} in {delay:.1f}s (attempt {attempt})")
            self._apply(transitions.connection_changed, ConnectionStatus.RECONNECTING)
            await self._sleep(delay)

        logger.error(f"Giving up on event stream for room {room_id} after {attempt} attempts")
        self._apply(transitions.connection_changed, ConnectionStatus.CLOSED)

    async def _consume(self, response: httpx.Response) -> None:
        decoder = SSEDecoder()
        async for line in response.aiter_lines():
            event = decoder.decode(line)
            if event is None:
                continue
            if event.id is not None:
                self._last_event_id = event.id
            try:
                payload = event.json()
            except ValueError:
                logger.warning(f"Ignoring non-JSON event data: {event.data[:80]}")
                continue
            self.handle_event(payload)

    async def _gap_fill(self, room_id: str) -> None:
        """Fetch everything after the newest buffered message."""
        while True:
            newest = self._state.newest_message
            if newest is None:
                return
            batch = await self._api.list_since(room_id, after_id=newest.id, limit=self._page_size)
            self._apply(transitions.gap_filled, room_id, batch)
            if len(batch) < self._page_size:
                return
