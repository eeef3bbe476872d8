"""Tests for attachment upload and blob serving."""
from pathlib import Path

import pytest

from roomcast.chat.schemas import MessageType
from roomcast.config import UploadSettings
from roomcast.errors import InvalidInput, NotFound, PayloadTooLarge, UnsupportedMediaType
from roomcast.files.schemas import AttachmentPolicy, message_type_for
from roomcast.files.service import BlobStorageService, sanitize_filename

from conftest import FakeClock


def _stored_files(upload_dir):
    chat_dir = Path(upload_dir) / "chat"
    if not chat_dir.exists():
        return []
    return [p for p in chat_dir.rglob("*") if p.is_file()]


class TestAttachmentPolicy:
    """Tests for AttachmentPolicy."""

    def test_sixty_megabytes_rejected_with_limit_in_message(self):
        policy = AttachmentPolicy.from_settings(UploadSettings())

        with pytest.raises(PayloadTooLarge, match="File size must be less than 50MB"):
            policy.check(60 * 1024 * 1024, "image/png")

    def test_size_checked_before_type(self):
        policy = AttachmentPolicy.from_settings(UploadSettings())

        with pytest.raises(PayloadTooLarge):
            policy.check(60 * 1024 * 1024, "application/x-msdownload")

    def test_disallowed_type(self):
        policy = AttachmentPolicy.from_settings(UploadSettings())

        with pytest.raises(UnsupportedMediaType, match="File type not allowed"):
            policy.check(10, "application/x-msdownload")

    def test_limit_is_inclusive(self):
        policy = AttachmentPolicy.from_settings(UploadSettings(max_file_size_mb=1))

        policy.check(1024 * 1024, "text/plain")

    def test_message_type_for(self):
        assert message_type_for("image/png") == MessageType.IMAGE
        assert message_type_for("application/pdf") == MessageType.FILE


class TestBlobStorage:
    """Tests for BlobStorageService."""

    @pytest.fixture
    def storage(self, tmp_path):
        return BlobStorageService(str(tmp_path / "blobs"), clock=FakeClock())

    def test_chat_path_layout(self, storage):
        path = storage.chat_path("room-1", "my photo.png")

        assert path == "chat/room-1/1704110400000_my_photo.png"

    def test_upload_and_resolve(self, storage):
        storage.upload("chat/r/a.txt", b"hello")

        assert storage.resolve("chat/r/a.txt").read_bytes() == b"hello"

    def test_blobs_are_immutable(self, storage):
        storage.upload("chat/r/a.txt", b"one")

        with pytest.raises(InvalidInput, match="File already exists"):
            storage.upload("chat/r/a.txt", b"two")
        assert storage.resolve("chat/r/a.txt").read_bytes() == b"one"

    def test_escaping_path_is_not_found(self, storage):
        with pytest.raises(NotFound):
            storage.resolve("../outside.txt", must_exist=False)

    def test_missing_blob(self, storage):
        with pytest.raises(NotFound):
            storage.resolve("chat/r/nothing.txt")

    def test_public_url(self, storage):
        assert storage.public_url("http://host/", "chat/r/a.txt") == "http://host/files/chat/r/a.txt"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("report.pdf", "report.pdf"),
            ("../../etc/passwd", "passwd"),
            ("C:\\Users\\me\\notes.txt", "notes.txt"),
            ("héllo wörld.txt", "h_llo_w_rld.txt"),
            ("...", "file"),
        ],
    )
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected


class TestUploadEndpoint:
    """Tests for POST /chat/upload and GET /files/{path}."""

    def test_upload_then_download(self, api_client, auth, direct_room):
        response = api_client.post(
            "/chat/upload",
            data={"room_id": direct_room.id},
            files={"file": ("notes.txt", b"some notes", "text/plain")},
            headers=auth("alice"),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "notes.txt"
        assert body["size"] == len(b"some notes")
        assert body["type"] == "text/plain"
        assert body["path"].startswith(f"chat/{direct_room.id}/")
        assert body["url"].endswith(f"/files/{body['path']}")

        served = api_client.get(f"/files/{body['path']}")
        assert served.status_code == 200
        assert served.content == b"some notes"

    def test_oversized_upload_writes_nothing(self, api_client, auth, direct_room, app_config):
        app_config.uploads.max_file_size_mb = 1

        response = api_client.post(
            "/chat/upload",
            data={"room_id": direct_room.id},
            files={"file": ("big.png", b"x" * (2 * 1024 * 1024), "image/png")},
            headers=auth("alice"),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "File size must be less than 1MB"}
        assert _stored_files(app_config.uploads.upload_dir) == []

    def test_disallowed_type_writes_nothing(self, api_client, auth, direct_room, app_config):
        response = api_client.post(
            "/chat/upload",
            data={"room_id": direct_room.id},
            files={"file": ("tool.exe", b"MZ", "application/x-msdownload")},
            headers=auth("alice"),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "File type not allowed"}
        assert _stored_files(app_config.uploads.upload_dir) == []

    def test_non_participant_is_403(self, api_client, auth, direct_room, app_config):
        response = api_client.post(
            "/chat/upload",
            data={"room_id": direct_room.id},
            files={"file": ("notes.txt", b"hi", "text/plain")},
            headers=auth("carol"),
        )

        assert response.status_code == 403
        assert _stored_files(app_config.uploads.upload_dir) == []

    def test_missing_file_is_400(self, api_client, auth, direct_room):
        response = api_client.post("/chat/upload", data={"room_id": direct_room.id}, headers=auth("alice"))

        assert response.status_code == 400
        assert response.json() == {"error": "File and room ID are required"}

    def test_unauthenticated_is_401(self, api_client, direct_room):
        response = api_client.post(
            "/chat/upload",
            data={"room_id": direct_room.id},
            files={"file": ("notes.txt", b"hi", "text/plain")},
        )

        assert response.status_code == 401

    def test_unknown_blob_is_404(self, api_client):
        response = api_client.get("/files/chat/nowhere/missing.txt")

        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}

    def test_attachment_message_round_trip(self, api_client, auth, direct_room):
        uploaded = api_client.post(
            "/chat/upload",
            data={"room_id": direct_room.id},
            files={"file": ("pic.png", b"\x89PNG", "image/png")},
            headers=auth("alice"),
        ).json()

        sent = api_client.post(
            "/chat/messages",
            json={
                "room_id": direct_room.id,
                "content": uploaded["name"],
                "message_type": "image",
                "file_url": uploaded["url"],
                "file_name": uploaded["name"],
                "file_size": uploaded["size"],
                "file_type": uploaded["type"],
            },
            headers=auth("alice"),
        )

        message = sent.json()["message"]
        assert message["message_type"] == "image"
        assert message["file_url"] == uploaded["url"]
