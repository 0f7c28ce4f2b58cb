"""Tests for the local media store and environment settings."""

import os

import pytest

from conftest import PNG_BYTES
from travel_connect.config import Settings
from travel_connect.errors import DependencyError, ValidationError
from travel_connect.media import LocalMediaStore, sniff_image_type


class TestSniffImageType:
    def test_known_signatures(self):
        assert sniff_image_type(PNG_BYTES) == "image/png"
        assert sniff_image_type(b"\xff\xd8\xff\xe0" + b"\x00" * 16) == "image/jpeg"
        assert sniff_image_type(b"GIF89a" + b"\x00" * 16) == "image/gif"
        assert sniff_image_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"

    def test_unknown(self):
        assert sniff_image_type(b"%PDF-1.7") is None
        assert sniff_image_type(b"") is None


class TestLocalMediaStore:
    def test_store_and_discard(self, settings):
        media = LocalMediaStore(settings)
        reference = media.store(PNG_BYTES, "image/png")
        path = os.path.join(media.root, os.path.basename(reference))
        assert reference.startswith(f"{settings.media_url_prefix}/trips/")
        with open(path, "rb") as f:
            assert f.read() == PNG_BYTES

        media.discard(reference)
        assert not os.path.exists(path)

    def test_discard_ignores_foreign_references(self, settings):
        LocalMediaStore(settings).discard("https://cdn.example.com/elsewhere.png")

    def test_extension_follows_content_not_filename(self, settings):
        reference = LocalMediaStore(settings).store(b"GIF89a" + b"\x00" * 16, None)
        assert reference.endswith(".gif")

    @pytest.mark.parametrize("data, content_type", [
        (b"", "image/png"),
        (PNG_BYTES, "application/pdf"),
        (b"just some text", "image/png"),
    ])
    def test_rejects_bad_uploads(self, settings, data, content_type):
        with pytest.raises(ValidationError) as exc:
            LocalMediaStore(settings).store(data, content_type)
        assert "cover_image" in exc.value.fields

    def test_rejects_oversized(self, settings):
        media = LocalMediaStore(settings)
        with pytest.raises(ValidationError):
            media.store(PNG_BYTES + b"\x00" * media.max_bytes, "image/png")

    def test_unwritable_directory_is_dependency_error(self, settings, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        media = LocalMediaStore(Settings(media_dir=str(blocker)))
        with pytest.raises(DependencyError):
            media.store(PNG_BYTES, "image/png")


class TestSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DB_PATH", "/tmp/tc.db")
        monkeypatch.setenv("FRONTEND_URL", "https://app.example.com/")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("MAX_COVER_MB", "3")
        settings = Settings.from_env()
        assert settings.db_path == "/tmp/tc.db"
        assert settings.frontend_url == "https://app.example.com"
        assert settings.log_level == "DEBUG"
        assert settings.max_cover_bytes == 3 * 1024 * 1024

    def test_defaults(self, monkeypatch):
        for name in ("DB_PATH", "MEDIA_DIR", "FRONTEND_URL", "DEFAULT_PAGE_SIZE"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.media_url_prefix == "/media"
        assert settings.default_page_size == 20
