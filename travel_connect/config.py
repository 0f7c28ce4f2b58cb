"""
Runtime configuration for Travel Connect.

Everything the service needs from the environment is read once into a
Settings object at startup and handed to the components that need it.
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    db_path: str = "/data/travel_connect.db"
    media_dir: str = "/data/media"
    media_url_prefix: str = "/media"
    base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:4200"
    log_level: str = "INFO"
    log_file: str = ""
    max_cover_mb: int = 10
    default_page_size: int = 20
    max_page_size: int = 100

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("DB_PATH", cls.db_path),
            media_dir=os.getenv("MEDIA_DIR", cls.media_dir),
            media_url_prefix=os.getenv("MEDIA_URL_PREFIX", cls.media_url_prefix).rstrip("/"),
            base_url=os.getenv("BASE_URL", cls.base_url).rstrip("/"),
            frontend_url=os.getenv("FRONTEND_URL", cls.frontend_url).rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_file=os.getenv("LOG_FILE", cls.log_file),
            max_cover_mb=int(os.getenv("MAX_COVER_MB", str(cls.max_cover_mb))),
            default_page_size=int(os.getenv("DEFAULT_PAGE_SIZE", str(cls.default_page_size))),
            max_page_size=int(os.getenv("MAX_PAGE_SIZE", str(cls.max_page_size))),
        )

    @property
    def max_cover_bytes(self) -> int:
        return self.max_cover_mb * 1024 * 1024
