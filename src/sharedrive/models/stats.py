"""UserStats model — per-user rollups kept for dashboards.

Every column is derived from the file and share-link tables and can be
rebuilt from them at any time.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime
from sqlmodel import Field, SQLModel


class UserStatsBase(SQLModel):
    """Base fields for a stats rollup. Subclass with ``table=True`` for a concrete table."""

    user_id: str = Field(primary_key=True)
    file_count: int = Field(default=0)
    trashed_file_count: int = Field(default=0)
    storage_bytes: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    shared_file_count: int = Field(default=0)
    download_count: int = Field(default=0)
    recomputed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class UserStats(UserStatsBase, table=True):
    """Default stats table — ``drive_user_stats``."""

    __tablename__ = "drive_user_stats"
