"""Settings and logging setup."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sharedrive.fs.sharing import MIN_TOKEN_BYTES


class DriveSettings(BaseSettings):
    """Runtime configuration, read from ``SHAREDRIVE_*`` environment variables or ``.env``."""

    database_url: str = "sqlite+aiosqlite:///sharedrive.db"
    echo_sql: bool = False
    blob_root: str = ".sharedrive/blobs"
    presign_ttl_seconds: int = Field(default=3600, gt=0)
    share_token_bytes: int = 32
    default_page_limit: int = Field(default=20, gt=0)
    max_page_limit: int = Field(default=100, gt=0)
    trash_retention_days: int = Field(default=30, ge=0)
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="SHAREDRIVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("share_token_bytes")
    @classmethod
    def _token_floor(cls, v: int) -> int:
        # tokens must carry at least 128 bits
        return max(v, MIN_TOKEN_BYTES)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()


@lru_cache
def get_settings() -> DriveSettings:
    return DriveSettings()


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a stream handler to the ``sharedrive`` logger.

    The library installs no handlers by default; applications call this
    (or configure logging themselves) to see its output.
    """
    logger = logging.getLogger("sharedrive")
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)
    if not any(getattr(h, "_sharedrive", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._sharedrive = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger
