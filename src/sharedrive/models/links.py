"""ShareLink model — tokenized anonymous access to one file or folder."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, SQLModel


class ShareLinkBase(SQLModel):
    """Base fields for a share-link. Subclass with ``table=True`` for a concrete table.

    Exactly one of ``file_id`` / ``folder_id`` is set.  ``max_downloads``
    of 0 means unlimited.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    token: str = Field(index=True, unique=True)
    owner_id: str = Field(index=True)
    file_id: str | None = Field(default=None, index=True)
    folder_id: str | None = Field(default=None, index=True)
    permission: str = Field(default="view")
    password_hash: str | None = Field(default=None)
    description: str = Field(default="")
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    max_downloads: int = Field(default=0)
    download_count: int = Field(default=0)
    view_count: int = Field(default=0)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def target_type(self) -> str:
        return "file" if self.file_id is not None else "folder"

    @property
    def target_id(self) -> str:
        return self.file_id if self.file_id is not None else self.folder_id  # type: ignore[return-value]

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


class ShareLink(ShareLinkBase, table=True):
    """Default share-link table — ``drive_share_links``."""

    __tablename__ = "drive_share_links"
    __table_args__ = (
        CheckConstraint(
            "(file_id IS NULL) <> (folder_id IS NULL)",
            name="ck_share_link_single_target",
        ),
    )
