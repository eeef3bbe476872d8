"""Blob storage for chat attachments.

Files are stored on disk under the configured upload directory:
    {upload_dir}/chat/{room_id}/{timestamp}_{sanitised filename}

Blobs are immutable; writing to a path that already exists fails.
"""
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Optional

from roomcast.clock import Clock, utcnow
from roomcast.errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    """Reduce *filename* to a safe single path component."""
    name = PurePosixPath(filename.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "file"


class BlobStorageService:
    """Disk-backed blob store with public URLs."""

    _instance: Optional["BlobStorageService"] = None
    _upload_dir: str = "uploads"

    def __init__(self, upload_dir: Optional[str] = None, clock: Clock = utcnow) -> None:
        if upload_dir:
            self._upload_dir = upload_dir
        self._clock = clock
        self._ensure_upload_dir()

    @classmethod
    def get_instance(cls, upload_dir: Optional[str] = None) -> "BlobStorageService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(upload_dir)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    @property
    def root(self) -> Path:
        return Path(self._upload_dir)

    def _ensure_upload_dir(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def chat_path(self, room_id: str, filename: str) -> str:
        """Blob path for a new chat attachment."""
        stamp = int(self._clock().timestamp() * 1000)
        return f"chat/{sanitize_filename(room_id)}/{stamp}_{sanitize_filename(filename)}"

    def upload(self, path: str, content: bytes) -> str:
        """Write *content* at *path*.

        Returns:
            The stored path.

        Raises:
            InvalidInput: If a blob already exists at *path*.
        """
        target = self.resolve(path, must_exist=False)
        if target.exists():
            raise InvalidInput("File already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("xb") as fh:
            fh.write(content)
        logger.info(f"Saved blob: {path} ({len(content)} bytes)")
        return path

    def resolve(self, path: str, must_exist: bool = True) -> Path:
        """Map a blob path to a file under the upload directory.

        Raises:
            NotFound: If the path escapes the upload directory, or
                *must_exist* is set and no file is there.
        """
        root = self.root.resolve()
        target = (root / path).resolve()
        if root not in target.parents:
            raise NotFound("File not found")
        if must_exist and not target.is_file():
            raise NotFound("File not found")
        return target

    def public_url(self, base_url: str, path: str) -> str:
        return f"{base_url.rstrip('/')}/files/{path}"
