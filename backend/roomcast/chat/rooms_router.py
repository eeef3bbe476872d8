"""Room management endpoints.

Endpoints:
    GET  /chat/rooms: Caller's rooms, most recently active first
    POST /chat/rooms: Create a room (direct rooms are reused per pair)
    POST /chat/rooms/{room_id}/invite: Add participants
    POST /chat/rooms/{room_id}/leave: Leave a room
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from roomcast.auth.dependencies import get_current_user
from roomcast.config import get_config
from roomcast.dependencies import get_room_service

from .rooms import RoomService
from .schemas import CreateRoomRequest, InviteRequest, Profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat/rooms", tags=["rooms"])


@router.get("")
async def list_rooms(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: Profile = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> dict:
    chat = get_config().chat
    size = min(limit or chat.default_page_size, chat.max_page_size)
    items, has_more = rooms.list_rooms(user.id, page=page, limit=size)
    return {
        "rooms": [room.model_dump(mode="json") for room in items],
        "page": page,
        "limit": size,
        "hasMore": has_more,
    }


@router.post("")
async def create_room(
    request: CreateRoomRequest,
    user: Profile = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> dict:
    room = rooms.create_room(user.id, request)
    return {"room": room.model_dump(mode="json")}


@router.post("/{room_id}/invite")
async def invite(
    room_id: str,
    request: InviteRequest,
    user: Profile = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> dict:
    room = rooms.invite(room_id, user.id, request.user_ids)
    return {"room": room.model_dump(mode="json")}


@router.post("/{room_id}/leave")
async def leave(
    room_id: str,
    user: Profile = Depends(get_current_user),
    rooms: RoomService = Depends(get_room_service),
) -> dict:
    deleted = rooms.leave(room_id, user.id)
    return {"success": True, "roomDeleted": deleted}
