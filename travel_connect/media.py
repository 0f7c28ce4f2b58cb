"""
Media store for trip cover images.

`store()` takes raw bytes and returns an opaque reference string that the trip
service saves verbatim. The local implementation writes into MEDIA_DIR and
hands back a URL path served by the app's static mount.
"""

import logging
import os
import uuid
from typing import Optional

from travel_connect.config import Settings
from travel_connect.errors import DependencyError, ValidationError

logger = logging.getLogger("travel_connect.media")

IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def sniff_image_type(data: bytes) -> Optional[str]:
    """Identify an image by its magic bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


class LocalMediaStore:
    def __init__(self, settings: Settings, subdir: str = "trips"):
        self.root = os.path.join(settings.media_dir, subdir)
        self.url_prefix = f"{settings.media_url_prefix}/{subdir}"
        self.max_bytes = settings.max_cover_bytes

    def _validate(self, data: bytes, content_type: Optional[str]) -> str:
        if not data:
            raise ValidationError("Empty upload", {"cover_image": "File is empty"})
        if len(data) > self.max_bytes:
            max_mb = self.max_bytes // (1024 * 1024)
            raise ValidationError("Image is too large", {"cover_image": f"Image is too large (max {max_mb}MB)"})
        if content_type and content_type.lower() not in IMAGE_TYPES:
            raise ValidationError("Only image files are allowed", {"cover_image": "Only image files are allowed"})
        sniffed = sniff_image_type(data)
        if not sniffed:
            raise ValidationError("File does not look like an image", {"cover_image": "File does not look like an image"})
        return sniffed

    def store(self, data: bytes, content_type: Optional[str] = None) -> str:
        """Persist an image and return its media reference."""
        image_type = self._validate(data, content_type)
        filename = f"trip-{uuid.uuid4().hex}{IMAGE_TYPES[image_type]}"
        path = os.path.join(self.root, filename)
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.error(f"Failed to store media {filename}: {e}")
            raise DependencyError("Media store unavailable") from e

        logger.info(f"Media stored: {filename} ({len(data)} bytes)")
        return f"{self.url_prefix}/{filename}"

    def discard(self, reference: str):
        """Best-effort removal of a stored file whose trip was never created."""
        if not reference or not reference.startswith(self.url_prefix + "/"):
            return
        path = os.path.join(self.root, os.path.basename(reference))
        try:
            os.remove(path)
        except OSError as exc:
            logger.warning(f"Unable to remove orphaned media {reference}: {exc}")
