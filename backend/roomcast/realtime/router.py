"""Server-Sent Events endpoint for live room updates.

Endpoints:
    GET     /chat/events?roomId=: SSE stream for one room
    OPTIONS /chat/events: CORS preflight

Check order: missing roomId (400), no session (401), not a participant (403).
Errors are reported as JSON before the stream starts; once streaming, the
bridge never writes errors into the stream.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import Response, StreamingResponse

from roomcast.auth.dependencies import get_optional_user
from roomcast.auth.service import ProfileService
from roomcast.chat.schemas import Profile, Watermark
from roomcast.chat.store import MessageStore
from roomcast.config import get_config
from roomcast.dependencies import get_change_feed, get_message_store, get_profile_service
from roomcast.errors import InvalidInput, NotFound, Unauthorized

from .bridge import SSE_HEADERS, EventBridge
from .feed import ChangeFeed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["events"])


@router.get("/events")
async def room_events(
    roomId: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None, description="Replay messages after this instant"),
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
    user: Optional[Profile] = Depends(get_optional_user),
    store: MessageStore = Depends(get_message_store),
    feed: ChangeFeed = Depends(get_change_feed),
    profiles: ProfileService = Depends(get_profile_service),
) -> StreamingResponse:
    """Open an SSE stream of room events."""
    if not roomId:
        raise InvalidInput("Room ID is required")
    if user is None:
        raise Unauthorized()
    store.require_participant(roomId, user.id)

    resume: Optional[Watermark] = None
    if last_event_id:
        try:
            resume = store.watermark_for(roomId, last_event_id)
        except NotFound:
            logger.warning(f"[SSE] Unknown Last-Event-ID {last_event_id} for room {roomId}; using read watermark")
    if resume is None and since is not None:
        resume = Watermark(since)

    chat = get_config().chat
    bridge = EventBridge(
        feed,
        store,
        profiles,
        ping_interval=chat.ping_interval_seconds,
        replay_limit=chat.replay_limit,
    )
    return StreamingResponse(
        bridge.stream(roomId, user.id, resume),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.options("/events")
async def room_events_preflight() -> Response:
    return Response(
        status_code=200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        },
    )
