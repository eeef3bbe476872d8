"""Async HTTP client for the Roomcast API.

Thin typed wrapper over ``httpx.AsyncClient``: every response body is
validated through the same pydantic models the server emits, and every
non-2xx response raises ``ChatApiError`` carrying the server's
``{"error": ...}`` message.

Usage:
    async with ChatApiClient("http://localhost:8000", token) as api:
        rooms, _ = await api.list_rooms()
        message = await api.send_message(rooms[0].id, "hello")
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from roomcast.chat.schemas import (
    ChatMessage,
    MessageType,
    Participant,
    RoomSummary,
    RoomType,
    TypingStatus,
    UnreadRoomCount,
    UnreadSummary,
)
from roomcast.errors import ChatError
from roomcast.files.schemas import UploadResponse, message_type_for

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=None)


class ChatApiError(ChatError):
    """Non-2xx response from the API (or a transport failure, status 0)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        return f"{self.status_code}: {self.message}"


class ChatApiClient:
    """Client for the chat endpoints of one user session."""

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=DEFAULT_TIMEOUT,
        )
        self._headers = {"Authorization": f"Bearer {token}"}

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # =========================================================================
    # Plumbing
    # =========================================================================

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            message = response.json().get("error") or response.reason_phrase
        except ValueError:
            message = response.text or response.reason_phrase
        raise ChatApiError(response.status_code, message)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise ChatApiError(0, f"Request failed: {e}") from e
        self._raise_for_status(response)
        return response.json()

    @staticmethod
    def _params(**values: Any) -> Dict[str, Any]:
        return {key: value for key, value in values.items() if value is not None}

    # =========================================================================
    # Rooms
    # =========================================================================

    async def list_rooms(self, page: int = 1, limit: Optional[int] = None) -> Tuple[List[RoomSummary], bool]:
        body = await self._request("GET", "/chat/rooms", params=self._params(page=page, limit=limit))
        return [RoomSummary.model_validate(r) for r in body["rooms"]], body["hasMore"]

    async def create_room(
        self,
        room_type: RoomType,
        participant_ids: List[str],
        name: Optional[str] = None,
    ) -> RoomSummary:
        body = await self._request(
            "POST",
            "/chat/rooms",
            json={"type": room_type.value, "participant_ids": participant_ids, "name": name},
        )
        return RoomSummary.model_validate(body["room"])

    # =========================================================================
    # Messages
    # =========================================================================

    async def list_messages(
        self,
        room_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[List[ChatMessage], bool]:
        body = await self._request(
            "GET",
            "/chat/messages",
            params=self._params(room_id=room_id, page=page, limit=limit),
        )
        return [ChatMessage.model_validate(m) for m in body["messages"]], body["hasMore"]

    async def list_since(
        self,
        room_id: str,
        after_id: Optional[str] = None,
        after: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ChatMessage]:
        params = self._params(
            room_id=room_id,
            after_id=after_id,
            after=after.isoformat() if after else None,
            limit=limit,
        )
        body = await self._request("GET", "/chat/messages/since", params=params)
        return [ChatMessage.model_validate(m) for m in body["messages"]]

    async def send_message(
        self,
        room_id: str,
        content: str,
        message_type: Optional[MessageType] = None,
        attachment: Optional[UploadResponse] = None,
        reply_to_id: Optional[str] = None,
    ) -> ChatMessage:
        """Append a message; *message_type* defaults from the attachment's MIME type."""
        if message_type is None:
            message_type = message_type_for(attachment.type) if attachment else MessageType.TEXT
        payload: Dict[str, Any] = {
            "room_id": room_id,
            "content": content,
            "message_type": message_type.value,
            "reply_to_id": reply_to_id,
        }
        if attachment is not None:
            payload.update(
                file_url=attachment.url,
                file_name=attachment.name,
                file_size=attachment.size,
                file_type=attachment.type,
            )
        body = await self._request("POST", "/chat/messages", json=payload)
        return ChatMessage.model_validate(body["message"])

    async def upload(self, room_id: str, filename: str, content: bytes, mime_type: str) -> UploadResponse:
        body = await self._request(
            "POST",
            "/chat/upload",
            data={"room_id": room_id},
            files={"file": (filename, content, mime_type)},
        )
        return UploadResponse.model_validate(body)

    # =========================================================================
    # Read state, typing, unread
    # =========================================================================

    async def mark_read(
        self,
        room_id: str,
        message_id: Optional[str] = None,
        upto: Optional[datetime] = None,
    ) -> Optional[str]:
        payload = self._params(
            room_id=room_id,
            message_id=message_id,
            upto=upto.isoformat() if upto else None,
        )
        body = await self._request("POST", "/chat/read", json=payload)
        return body.get("last_read_at")

    async def read_status(self, room_id: str) -> Optional[Participant]:
        body = await self._request("GET", "/chat/read", params={"room_id": room_id})
        status = body.get("readStatus")
        return Participant.model_validate(status) if status else None

    async def typing(self, room_id: str) -> List[TypingStatus]:
        body = await self._request("GET", "/chat/typing", params={"room_id": room_id})
        return [TypingStatus.model_validate(t) for t in body["typingStatus"]]

    async def set_typing(self, room_id: str, is_typing: bool) -> None:
        await self._request("POST", "/chat/typing", json={"room_id": room_id, "is_typing": is_typing})

    async def unread_summary(self) -> UnreadSummary:
        return UnreadSummary.model_validate(await self._request("GET", "/chat/unread"))

    async def unread_count(self, room_id: str) -> UnreadRoomCount:
        body = await self._request("GET", "/chat/unread", params={"room_id": room_id})
        return UnreadRoomCount.model_validate(body)

    # =========================================================================
    # Events
    # =========================================================================

    def open_events(self, room_id: str, last_event_id: Optional[str] = None):
        """Context manager streaming ``GET /chat/events`` for *room_id*."""
        headers = dict(self._headers, Accept="text/event-stream")
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
        return self._client.stream("GET", "/chat/events", params={"roomId": room_id}, headers=headers)

    async def check_stream(self, response: httpx.Response) -> None:
        """Raise ChatApiError if the stream was refused (reads the error body)."""
        if response.is_success:
            return
        await response.aread()
        self._raise_for_status(response)
