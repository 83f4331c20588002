"""AuditLog model — append-only record of drive mutations."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class AuditLogBase(SQLModel):
    """Base fields for an audit entry. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    owner_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource_type: str = Field(default="")
    resource_id: str | None = Field(default=None, index=True)
    details: str = Field(default="")
    status: str = Field(default="success")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class AuditLog(AuditLogBase, table=True):
    """Default audit table — ``drive_audit_logs``."""

    __tablename__ = "drive_audit_logs"
