"""FileAccess model — per-user log of file views, downloads, and edits."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class FileAccessBase(SQLModel):
    """Base fields for a file-access entry. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    file_id: str = Field(index=True)
    action: str = Field(default="view")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
        index=True,
    )


class FileAccess(FileAccessBase, table=True):
    """Default file-access table — ``drive_file_accesses``."""

    __tablename__ = "drive_file_accesses"
