"""User model — the owning principal for files and folders.

Credentials live with the authentication collaborator; this table only
carries the identity and the account flags the access checks consult.
``tree_version`` is bumped by every structural change to the user's folder
tree; the bump doubles as the row lock that serializes those changes.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class UserBase(SQLModel):
    """Base fields for a user record. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    email: str = Field(index=True, unique=True)
    display_name: str = Field(default="")
    is_active: bool = Field(default=True)
    is_admin: bool = Field(default=False)
    email_verified: bool = Field(default=False)
    tree_version: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class User(UserBase, table=True):
    """Default user table — ``drive_users``."""

    __tablename__ = "drive_users"
