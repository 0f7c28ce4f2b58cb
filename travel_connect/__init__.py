"""Travel Connect trip collaboration service."""

APP_VERSION = "0.4.0"
