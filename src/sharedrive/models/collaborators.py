"""Collaborator model — role grants on a file or folder.

A grant on a folder reaches every descendant unless a descendant carries
its own grant for the same grantee; the closest grant wins.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class CollaboratorBase(SQLModel):
    """Base fields for a collaborator grant. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    resource_type: str = Field(index=True)
    resource_id: str = Field(index=True)
    grantee_id: str = Field(index=True)
    role: str = Field(default="viewer")
    granted_by: str = Field(default="")
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class Collaborator(CollaboratorBase, table=True):
    """Default collaborator table — ``drive_collaborators``."""

    __tablename__ = "drive_collaborators"
    __table_args__ = (
        UniqueConstraint("resource_type", "resource_id", "grantee_id"),
    )
