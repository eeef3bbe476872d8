"""Pydantic schemas for rooms, participants, messages and typing state.

These models are the typed boundary between DuckDB rows and the chat core:
every row read from the store is validated through one of them before any
field is consumed. Timestamps are coerced to timezone-aware UTC.

Request models mirror the JSON bodies accepted by the chat endpoints.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, NamedTuple, Optional

from pydantic import AfterValidator, BaseModel, Field

from roomcast.clock import ensure_utc

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class RoomType(str, Enum):
    """Kind of chat room.

    Attributes:
        DIRECT: One-to-one conversation (exactly 2 participants).
        GROUP: Conversation with any number of participants.
        SELF: Notes-to-self room (exactly 1 participant).
    """
    DIRECT = "direct"
    GROUP = "group"
    SELF = "self"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class Profile(BaseModel):
    """Public profile fields used to enrich messages and typing rows."""
    id: str = Field(..., description="User ID")
    username: str = Field(..., description="Display name")
    avatar_url: Optional[str] = Field(default=None, description="Avatar image URL")


class ChatRoom(BaseModel):
    id: str = Field(..., description="Room ID")
    name: Optional[str] = Field(default=None, description="Room name (groups only)")
    type: RoomType = Field(..., description="direct, group or self")
    created_at: UtcDatetime
    updated_at: UtcDatetime
    deleted_at: Optional[UtcDatetime] = None


class Participant(BaseModel):
    """Membership row carrying the user's read watermark."""
    room_id: str
    user_id: str
    joined_at: UtcDatetime
    last_read_at: Optional[UtcDatetime] = Field(default=None, description="Read watermark")
    last_read_message_id: Optional[str] = None
    is_admin: bool = False
    user: Optional[Profile] = None


class ChatMessage(BaseModel):
    """A persisted chat message.

    Ordering within a room is (created_at, seq); ``seq`` is the store's
    monotonically increasing tie-break.
    """
    id: str = Field(..., description="Message ID")
    seq: int = Field(..., description="Store-assigned ordering sequence")
    room_id: str
    sender_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    file_type: Optional[str] = None
    reply_to_id: Optional[str] = None
    created_at: UtcDatetime
    sender: Optional[Profile] = None
    read_by: List[str] = Field(default_factory=list)

    @property
    def sort_key(self) -> "Watermark":
        return Watermark(self.created_at, self.seq)


class Watermark(NamedTuple):
    """Position in a room's message log.

    ``seq`` is optional: a bare timestamp means "everything after this
    instant".
    """
    created_at: datetime
    seq: Optional[int] = None


class RoomSummary(ChatRoom):
    """Room as listed for a user: participants, last message, unread count."""
    participants: List[Participant] = Field(default_factory=list)
    last_message: Optional[ChatMessage] = None
    unread_count: int = 0


class TypingStatus(BaseModel):
    room_id: str
    user_id: str
    is_typing: bool
    last_activity: UtcDatetime
    user: Optional[Profile] = None


class UnreadRoomCount(BaseModel):
    room_id: str
    room_name: str = "Unknown Room"
    unreadCount: int = 0
    latestMessageTime: Optional[UtcDatetime] = None


class UnreadSummary(BaseModel):
    hasUnreadMessages: bool = False
    totalUnreadCount: int = 0
    roomCounts: List[UnreadRoomCount] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "UnreadSummary":
        return cls()


# =============================================================================
# Request bodies
# =============================================================================


class SendMessageRequest(BaseModel):
    room_id: Optional[str] = None
    content: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    file_type: Optional[str] = Field(default=None, description="MIME type of the attachment")
    reply_to_id: Optional[str] = None


class MarkReadRequest(BaseModel):
    room_id: Optional[str] = None
    message_id: Optional[str] = None
    upto: Optional[UtcDatetime] = None


class TypingUpdateRequest(BaseModel):
    room_id: Optional[str] = None
    is_typing: bool = False


class CreateRoomRequest(BaseModel):
    name: Optional[str] = None
    type: RoomType
    participant_ids: List[str] = Field(default_factory=list)


class InviteRequest(BaseModel):
    user_ids: List[str] = Field(default_factory=list)
