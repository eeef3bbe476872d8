"""Chat HTTP endpoints.

Endpoints:
    GET  /chat/messages: Paged history (newest page first)
    POST /chat/messages: Append a message
    GET  /chat/messages/since: Gap-fill after a watermark
    GET  /chat/read: Caller's read watermark(s)
    POST /chat/read: Advance the caller's read watermark
    GET  /chat/typing: Users typing in a room (excluding the caller)
    POST /chat/typing: Start/stop typing
    GET  /chat/unread: Unread count for one room, or the summary

Live delivery happens over SSE (``roomcast.realtime.router``); these
endpoints only read and write the store.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from roomcast.auth.dependencies import get_current_user, get_optional_user
from roomcast.config import get_config
from roomcast.dependencies import (
    get_message_store,
    get_typing_tracker,
    get_unread_service,
)
from roomcast.errors import InvalidInput, UpstreamFailure

from .presence import TypingTracker
from .schemas import (
    MarkReadRequest,
    Profile,
    SendMessageRequest,
    TypingUpdateRequest,
    UnreadRoomCount,
    UnreadSummary,
    Watermark,
)
from .store import MessageStore
from .unread import UnreadService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

NO_STORE = "no-cache, no-store, must-revalidate"


def _page_size(limit: Optional[int]) -> int:
    chat = get_config().chat
    if limit is None:
        return chat.default_page_size
    return max(1, min(limit, chat.max_page_size))


def _require_room_id(room_id: Optional[str]) -> str:
    if not room_id:
        raise InvalidInput("Room ID is required")
    return room_id


# =============================================================================
# Messages
# =============================================================================


@router.get("/messages")
async def list_messages(
    room_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: Profile = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
) -> dict:
    """Return one page of history, oldest-first within the page.

    Opening a page marks the newest returned message as read.
    """
    room_id = _require_room_id(room_id)
    store.get_room(room_id)
    store.require_participant(room_id, user.id)

    size = _page_size(limit)
    messages, has_more = store.list_page(room_id, page=page, limit=size)
    if messages:
        store.mark_read(room_id, user.id, message_id=messages[-1].id)

    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "page": page,
        "limit": size,
        "hasMore": has_more,
    }


@router.get("/messages/since")
async def list_messages_since(
    room_id: Optional[str] = Query(None),
    after: Optional[datetime] = Query(None, description="Exclusive lower bound on created_at"),
    after_id: Optional[str] = Query(None, description="Message ID to resume after"),
    limit: Optional[int] = Query(None, ge=1),
    user: Profile = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
) -> dict:
    """Messages strictly after a watermark, oldest first.

    ``after_id`` takes precedence over ``after``; with neither the log is
    read from the beginning.
    """
    room_id = _require_room_id(room_id)
    store.get_room(room_id)
    store.require_participant(room_id, user.id)

    watermark: Optional[Watermark] = None
    if after_id:
        watermark = store.watermark_for(room_id, after_id)
    elif after is not None:
        watermark = Watermark(after)

    messages = store.list_since(room_id, watermark, _page_size(limit))
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/messages")
async def send_message(
    request: SendMessageRequest,
    user: Profile = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
) -> dict:
    """Append a message; returns it once durably stored."""
    if not request.room_id or not request.content:
        raise InvalidInput("Room ID and content are required")

    message = store.append(
        request.room_id,
        user.id,
        request.content,
        request.message_type,
        file_url=request.file_url,
        file_name=request.file_name,
        file_size=request.file_size,
        file_type=request.file_type,
        reply_to_id=request.reply_to_id,
    )
    return {"message": message.model_dump(mode="json")}


# =============================================================================
# Read watermarks
# =============================================================================


@router.post("/read")
async def mark_read(
    request: MarkReadRequest,
    user: Profile = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
) -> JSONResponse:
    room_id = _require_room_id(request.room_id)
    participant = store.mark_read(room_id, user.id, upto=request.upto, message_id=request.message_id)
    body = {
        "success": True,
        "last_read_at": participant.model_dump(mode="json")["last_read_at"],
    }
    return JSONResponse(body, headers={"Cache-Control": NO_STORE})


@router.get("/read")
async def read_status(
    room_id: Optional[str] = Query(None),
    user: Profile = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
) -> JSONResponse:
    statuses = store.read_status(user.id, room_id)
    if room_id is not None:
        body = {"readStatus": statuses[0].model_dump(mode="json") if statuses else None}
    else:
        body = {"readStatuses": [s.model_dump(mode="json") for s in statuses]}
    return JSONResponse(body, headers={"Cache-Control": NO_STORE})


# =============================================================================
# Typing
# =============================================================================


@router.get("/typing")
async def get_typing(
    room_id: Optional[str] = Query(None),
    user: Profile = Depends(get_current_user),
    tracker: TypingTracker = Depends(get_typing_tracker),
) -> dict:
    room_id = _require_room_id(room_id)
    statuses = tracker.typing_users(room_id, user.id)
    return {"typingStatus": [s.model_dump(mode="json") for s in statuses]}


@router.post("/typing")
async def update_typing(
    request: TypingUpdateRequest,
    user: Profile = Depends(get_current_user),
    tracker: TypingTracker = Depends(get_typing_tracker),
) -> dict:
    room_id = _require_room_id(request.room_id)
    tracker.set_typing(room_id, user.id, request.is_typing)
    return {"success": True}


# =============================================================================
# Unread
# =============================================================================


def _cache_headers(max_age: int) -> dict:
    return {
        "Cache-Control": f"private, max-age={max_age}, must-revalidate",
        "X-Content-Type-Options": "nosniff",
    }


@router.get("/unread")
async def get_unread(
    room_id: Optional[str] = Query(None),
    user: Optional[Profile] = Depends(get_optional_user),
    unread: UnreadService = Depends(get_unread_service),
) -> JSONResponse:
    """Unread count for ``room_id``, or the summary across all rooms.

    Always answers with a well-formed body so badge widgets can render.
    """
    chat = get_config().chat

    if room_id:
        if user is None:
            body = UnreadRoomCount(room_id=room_id).model_dump(mode="json", exclude={"room_name"})
            body["error"] = "Unauthorized"
            return JSONResponse(body, status_code=401)
        try:
            count = unread.unread_for_room(user.id, room_id)
        except UpstreamFailure as e:
            logger.error(f"[Unread] Room count failed for {user.id} in {room_id}: {e}")
            body = UnreadRoomCount(room_id=room_id).model_dump(mode="json", exclude={"room_name"})
            body["error"] = "Failed to fetch unread count"
            return JSONResponse(body, status_code=500)
        return JSONResponse(
            count.model_dump(mode="json", exclude={"room_name"}),
            headers=_cache_headers(chat.unread_room_cache_seconds),
        )

    if user is None:
        body = UnreadSummary.empty().model_dump(mode="json")
        body["error"] = "Unauthorized"
        return JSONResponse(body, status_code=401)

    summary = unread.unread_summary(user.id)
    return JSONResponse(
        summary.model_dump(mode="json"),
        headers=_cache_headers(chat.unread_summary_cache_seconds),
    )
