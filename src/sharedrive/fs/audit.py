"""AuditService — append-only log of drive mutations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func
from sqlmodel import select

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.events import DriveEvent
    from sharedrive.models.audit import AuditLogBase


class AuditService:
    """Writes and pages through audit records."""

    def __init__(self, audit_model: type[AuditLogBase]) -> None:
        self._audit_model = audit_model

    async def record(
        self,
        session: AsyncSession,
        action: str,
        *,
        actor_id: str | None = None,
        owner_id: str | None = None,
        resource_type: str = "",
        resource_id: str | None = None,
        details: str = "",
        status: str = "success",
    ) -> AuditLogBase:
        entry = self._audit_model(
            action=action,
            actor_id=actor_id,
            owner_id=owner_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            status=status,
        )
        session.add(entry)
        await session.flush()
        return entry

    async def handle_event(self, session: AsyncSession, event: DriveEvent) -> None:
        await self.record(
            session,
            event.event_type.value,
            actor_id=event.actor_id,
            owner_id=event.owner_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            details=event.details,
        )

    async def list_entries(
        self,
        session: AsyncSession,
        *,
        owner_id: str | None = None,
        resource_id: str | None = None,
        action: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[AuditLogBase], int]:
        """Return one page of entries (newest first) and the total match count.

        ``owner_id=None`` lists every owner; restricting that to admins is
        the caller's job.
        """
        model = self._audit_model
        conds = []
        if owner_id is not None:
            conds.append(model.owner_id == owner_id)
        if resource_id is not None:
            conds.append(model.resource_id == resource_id)
        if action is not None:
            conds.append(model.action == action)
        total = (await session.execute(select(func.count()).select_from(model).where(*conds))).scalar_one()
        result = await session.execute(
            select(model)
            .where(*conds)
            .order_by(model.created_at.desc(), model.id.asc())  # type: ignore[union-attr]
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total)
