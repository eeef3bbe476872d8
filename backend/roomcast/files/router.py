"""FastAPI router for chat attachments.

Endpoints:
    POST /chat/upload: Upload an attachment into a room (multipart)
    GET  /files/{path}: Serve a stored blob
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import FileResponse

from roomcast.auth.dependencies import get_current_user
from roomcast.chat.schemas import Profile
from roomcast.chat.store import MessageStore
from roomcast.config import get_config
from roomcast.dependencies import get_attachment_policy, get_blob_storage, get_message_store
from roomcast.errors import InvalidInput

from .schemas import AttachmentPolicy, UploadResponse
from .service import BlobStorageService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


def _base_url(request: Request) -> str:
    configured = get_config().server.public_base_url
    if configured:
        return configured
    return str(request.base_url)


@router.post("/chat/upload", response_model=UploadResponse)
async def upload_attachment(
    request: Request,
    file: Optional[UploadFile] = File(None),
    room_id: Optional[str] = Form(None),
    user: Profile = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store),
    policy: AttachmentPolicy = Depends(get_attachment_policy),
    storage: BlobStorageService = Depends(get_blob_storage),
) -> UploadResponse:
    """Store an attachment for a room the caller belongs to.

    Checks run in order: membership (403), size (400), MIME type (400).
    Nothing is written unless every check passes. The returned URL goes
    into the ``file_url`` of the message that carries the attachment.
    """
    if file is None or not room_id:
        raise InvalidInput("File and room ID are required")
    store.require_participant(room_id, user.id)

    content = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    policy.check(len(content), mime_type)

    name = file.filename or "file"
    path = storage.upload(storage.chat_path(room_id, name), content)
    logger.info(f"Attachment {name} ({len(content)} bytes) uploaded to room {room_id} by {user.id}")

    return UploadResponse(
        url=storage.public_url(_base_url(request), path),
        path=path,
        size=len(content),
        type=mime_type,
        name=name,
    )


@router.get("/files/{path:path}")
async def download_blob(
    path: str,
    storage: BlobStorageService = Depends(get_blob_storage),
) -> FileResponse:
    """Serve a stored blob; blob URLs are public."""
    return FileResponse(path=storage.resolve(path))
