"""Service factories for FastAPI ``Depends``.

Every router resolves its collaborators through these functions so tests can
swap any of them with ``app.dependency_overrides``.
"""
from fastapi import Depends

from roomcast.auth.service import ProfileService
from roomcast.chat.presence import TypingTracker
from roomcast.chat.rooms import RoomService
from roomcast.chat.store import MessageStore
from roomcast.chat.unread import UnreadService
from roomcast.config import get_config
from roomcast.db import Database
from roomcast.files.schemas import AttachmentPolicy
from roomcast.files.service import BlobStorageService
from roomcast.realtime.feed import ChangeFeed


def get_database() -> Database:
    return Database.get_instance(get_config().database.path)


def get_change_feed() -> ChangeFeed:
    return ChangeFeed.get_instance(get_config().chat.subscriber_queue_size)


def get_profile_service(db: Database = Depends(get_database)) -> ProfileService:
    return ProfileService(db)


def get_attachment_policy() -> AttachmentPolicy:
    return AttachmentPolicy.from_settings(get_config().uploads)


def get_message_store(
    db: Database = Depends(get_database),
    feed: ChangeFeed = Depends(get_change_feed),
    profiles: ProfileService = Depends(get_profile_service),
    attachments: AttachmentPolicy = Depends(get_attachment_policy),
) -> MessageStore:
    return MessageStore(db, feed=feed, profiles=profiles, attachments=attachments)


def get_room_service(
    db: Database = Depends(get_database),
    store: MessageStore = Depends(get_message_store),
    profiles: ProfileService = Depends(get_profile_service),
) -> RoomService:
    return RoomService(db, store, profiles)


def get_unread_service(db: Database = Depends(get_database)) -> UnreadService:
    return UnreadService(db, summary_limit=get_config().chat.unread_summary_limit)


def get_typing_tracker(
    db: Database = Depends(get_database),
    profiles: ProfileService = Depends(get_profile_service),
) -> TypingTracker:
    return TypingTracker(db, profiles, ttl_seconds=get_config().chat.typing_ttl_seconds)


def get_blob_storage() -> BlobStorageService:
    return BlobStorageService.get_instance(get_config().uploads.upload_dir)
