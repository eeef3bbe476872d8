"""Schemas and validation rules for chat attachments.

Uploads are checked against the configured size limit (50MB by default)
and MIME allowlist before anything touches blob storage. The same policy
guards attachment metadata on message append.
"""
from dataclasses import dataclass
from typing import FrozenSet, Optional

from pydantic import BaseModel, Field

from roomcast.chat.schemas import MessageType
from roomcast.config import UploadSettings
from roomcast.errors import PayloadTooLarge, UnsupportedMediaType


class UploadResponse(BaseModel):
    """Response of POST /chat/upload."""
    url: str = Field(..., description="Public URL of the stored blob")
    path: str = Field(..., description="Blob path inside the bucket")
    size: int = Field(..., description="Size in bytes")
    type: str = Field(..., description="MIME type")
    name: str = Field(..., description="Original filename")


@dataclass(frozen=True)
class AttachmentPolicy:
    """Size limit and MIME allowlist for attachments."""
    max_size_bytes: int
    allowed_mime_types: FrozenSet[str]

    @classmethod
    def from_settings(cls, uploads: UploadSettings) -> "AttachmentPolicy":
        return cls(
            max_size_bytes=uploads.max_file_size_bytes,
            allowed_mime_types=frozenset(uploads.allowed_mime_types),
        )

    @property
    def max_size_mb(self) -> int:
        return self.max_size_bytes // (1024 * 1024)

    def check(self, size: Optional[int], mime_type: Optional[str]) -> None:
        """Validate an attachment, size first.

        Raises:
            PayloadTooLarge: If *size* exceeds the limit.
            UnsupportedMediaType: If *mime_type* is not allowlisted.
        """
        if size is not None and size > self.max_size_bytes:
            raise PayloadTooLarge(f"File size must be less than {self.max_size_mb}MB")
        if mime_type is not None and mime_type not in self.allowed_mime_types:
            raise UnsupportedMediaType("File type not allowed")


def message_type_for(mime_type: str) -> MessageType:
    """Images render inline; everything else is a file attachment."""
    if mime_type.startswith("image/"):
        return MessageType.IMAGE
    return MessageType.FILE
