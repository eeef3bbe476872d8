"""Tests for settings loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from roomcast.config import SETTINGS_ENV_VAR, AppConfig, ChatSettings, load_config


def test_missing_file_gives_defaults(tmp_path):
    """A missing settings file is not an error."""
    cfg = load_config(settings_path=tmp_path / "absent.yaml")

    assert cfg.chat.typing_ttl_seconds == 5.0
    assert cfg.chat.ping_interval_seconds == 30.0
    assert cfg.chat.unread_room_cache_seconds == 10
    assert cfg.chat.unread_summary_cache_seconds == 15
    assert cfg.uploads.max_file_size_mb == 50
    assert "image/png" in cfg.uploads.allowed_mime_types


def test_values_are_read_from_yaml(tmp_path):
    settings_file = tmp_path / "roomcast.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 9000\n"
        "chat:\n"
        "  typing_ttl_seconds: 3\n"
        "  ping_interval_seconds: 10\n"
        "logging:\n"
        "  environment: development\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert cfg.server.port == 9000
    assert cfg.chat.typing_ttl_seconds == 3
    assert cfg.chat.ping_interval_seconds == 10
    assert cfg.logging.is_development is True


def test_relative_paths_resolve_against_settings_dir(tmp_path):
    settings_file = tmp_path / "roomcast.settings.yaml"
    settings_file.write_text(
        "database:\n"
        "  path: data/chat.duckdb\n"
        "uploads:\n"
        "  upload_dir: blobs\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)

    assert Path(cfg.database.path) == tmp_path.resolve() / "data" / "chat.duckdb"
    assert Path(cfg.uploads.upload_dir) == tmp_path.resolve() / "blobs"


def test_memory_database_is_left_alone(tmp_path):
    settings_file = tmp_path / "roomcast.settings.yaml"
    settings_file.write_text("database:\n  path: ':memory:'\n", encoding="utf-8")

    assert load_config(settings_path=settings_file).database.path == ":memory:"


def test_settings_path_from_environment(tmp_path, monkeypatch):
    settings_file = tmp_path / "custom.yaml"
    settings_file.write_text("server:\n  port: 7001\n", encoding="utf-8")
    monkeypatch.setenv(SETTINGS_ENV_VAR, str(settings_file))

    assert load_config().server.port == 7001


@pytest.mark.parametrize(
    "field",
    ["typing_ttl_seconds", "typing_cleanup_interval_seconds", "ping_interval_seconds"],
)
def test_non_positive_intervals_rejected(field):
    with pytest.raises(ValidationError):
        ChatSettings(**{field: 0})


def test_zero_page_size_rejected():
    with pytest.raises(ValidationError):
        ChatSettings(default_page_size=0)


def test_unknown_environment_rejected():
    with pytest.raises(ValidationError):
        AppConfig(logging={"environment": "staging"})


def test_max_file_size_bytes():
    assert AppConfig().uploads.max_file_size_bytes == 50 * 1024 * 1024
