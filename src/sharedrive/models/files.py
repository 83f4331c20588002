"""Folder and DriveFile models.

Folders form a parent-pointer tree; ``path`` is a denormalized cache of
ancestor names recomputed on rename and move.  Trash is a state on both
tables: ``trashed_at`` plus the ``trash_batch_id`` shared by every row
trashed in the same cascade.  ``parent_id`` / ``folder_id`` are left
untouched while trashed so a restore can reattach the row.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime
from sqlmodel import Field, SQLModel


class FolderBase(SQLModel):
    """Base fields for a folder. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str = Field(default="")
    color: str = Field(default="")
    owner_id: str = Field(index=True)
    parent_id: str | None = Field(default=None, index=True)
    path: str = Field(default="/", index=True)
    trashed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    trash_batch_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def is_trashed(self) -> bool:
        return self.trashed_at is not None


class Folder(FolderBase, table=True):
    """Default folder table — ``drive_folders``."""

    __tablename__ = "drive_folders"


class DriveFileBase(SQLModel):
    """Base fields for a stored file. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    name: str = Field(default="")
    original_name: str = Field(default="")
    extension: str = Field(default="")
    mime_type: str = Field(default="application/octet-stream")
    size_bytes: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    object_ref: str = Field(default="")
    owner_id: str = Field(index=True)
    folder_id: str | None = Field(default=None, index=True)
    is_public: bool = Field(default=False)
    is_starred: bool = Field(default=False)
    description: str = Field(default="")
    tags: str = Field(default="")
    download_count: int = Field(default=0)
    trashed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    trash_batch_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def is_trashed(self) -> bool:
        return self.trashed_at is not None

    @property
    def tag_list(self) -> list[str]:
        return [t.strip() for t in self.tags.split(",") if t.strip()]


class DriveFile(DriveFileBase, table=True):
    """Default file table — ``drive_files``."""

    __tablename__ = "drive_files"
