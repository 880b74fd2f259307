import os
from typing import List


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings:
    """Server configuration, read from NOTESYNC_* environment variables."""

    VERSION = "0.3.0"

    def __init__(self) -> None:
        self.DB_PATH: str = os.getenv("NOTESYNC_DB_PATH", "data/notesync.db")
        self.MIN_CLIENT_VERSION: str = os.getenv("NOTESYNC_MIN_CLIENT_VERSION", "0.1.0")
        self.ALLOWED_ORIGINS: List[str] = _split(os.getenv("NOTESYNC_ALLOWED_ORIGINS", "*"))
        self.HOST: str = os.getenv("NOTESYNC_HOST", "0.0.0.0")
        self.PORT: int = int(os.getenv("NOTESYNC_PORT", "3222"))
        self.LOG_LEVEL: str = os.getenv("NOTESYNC_LOG_LEVEL", "INFO").upper()
