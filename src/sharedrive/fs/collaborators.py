"""CollaboratorService — grant CRUD on files and folders.

Stateless service that receives the collaborator and user models at
construction and a session at call time.  Authorization of the caller is
the facade's job; this layer validates the grant itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, or_
from sqlmodel import select

from .exceptions import NotFoundError, ValidationError
from .permissions import Role
from .types import CollaboratorInfo, ResourceRef
from .utils import as_utc, is_expired, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.models.collaborators import CollaboratorBase
    from sharedrive.models.users import UserBase

logger = logging.getLogger(__name__)

_UNSET = object()


def grant_to_info(grant: CollaboratorBase) -> CollaboratorInfo:
    return CollaboratorInfo(
        id=grant.id,
        resource_type=grant.resource_type,
        resource_id=grant.resource_id,
        grantee_id=grant.grantee_id,
        role=grant.role,
        granted_by=grant.granted_by,
        expires_at=as_utc(grant.expires_at),
        created_at=grant.created_at,
    )


class CollaboratorService:
    """Manages collaborator grants.

    One grant per (resource, grantee): adding a grant that already exists
    updates its role and expiry in place.
    """

    def __init__(
        self,
        collaborator_model: type[CollaboratorBase],
        user_model: type[UserBase],
    ) -> None:
        self._collaborator_model = collaborator_model
        self._user_model = user_model

    async def _find(
        self, session: AsyncSession, ref: ResourceRef, grantee_id: str
    ) -> CollaboratorBase | None:
        model = self._collaborator_model
        result = await session.execute(
            select(model).where(
                model.resource_type == ref.type.value,
                model.resource_id == ref.id,
                model.grantee_id == grantee_id,
            )
        )
        return result.scalar_one_or_none()

    async def add(
        self,
        session: AsyncSession,
        ref: ResourceRef,
        owner_id: str,
        grantee_id: str,
        role: str | Role,
        granted_by: str,
        *,
        expires_at: datetime | None = None,
    ) -> CollaboratorBase:
        """Create or update the grant for *grantee_id* on *ref*. Flushes but does not commit."""
        parsed = Role.parse(role)
        if grantee_id == owner_id:
            raise ValidationError("Cannot add the owner as a collaborator")
        if expires_at is not None and is_expired(expires_at):
            raise ValidationError("expires_at must be in the future")

        user_model = self._user_model
        result = await session.execute(select(user_model.id).where(user_model.id == grantee_id))
        if result.first() is None:
            raise NotFoundError(f"User not found: {grantee_id}")

        grant = await self._find(session, ref, grantee_id)
        if grant is not None:
            grant.role = parsed.value
            grant.expires_at = expires_at
            grant.granted_by = granted_by
            grant.updated_at = utcnow()
        else:
            grant = self._collaborator_model(
                resource_type=ref.type.value,
                resource_id=ref.id,
                grantee_id=grantee_id,
                role=parsed.value,
                granted_by=granted_by,
                expires_at=expires_at,
            )
            session.add(grant)
        await session.flush()
        logger.debug("Granted %s on %s %s to %s", parsed.value, ref.type.value, ref.id, grantee_id)
        return grant

    async def get(self, session: AsyncSession, grant_id: str) -> CollaboratorBase:
        model = self._collaborator_model
        result = await session.execute(select(model).where(model.id == grant_id))
        grant = result.scalar_one_or_none()
        if grant is None:
            raise NotFoundError(f"Collaborator not found: {grant_id}")
        return grant

    async def update(
        self,
        session: AsyncSession,
        grant: CollaboratorBase,
        *,
        role: str | Role | None = None,
        expires_at: datetime | None | object = _UNSET,
    ) -> CollaboratorBase:
        """Change role and/or expiry.  Pass ``expires_at=None`` to clear the expiry."""
        if role is not None:
            grant.role = Role.parse(role).value
        if expires_at is not _UNSET:
            if expires_at is not None and is_expired(expires_at):  # type: ignore[arg-type]
                raise ValidationError("expires_at must be in the future")
            grant.expires_at = expires_at  # type: ignore[assignment]
        grant.updated_at = utcnow()
        await session.flush()
        return grant

    async def remove(self, session: AsyncSession, ref: ResourceRef, grantee_id: str) -> bool:
        """Remove the grant for *grantee_id* on *ref*. Returns True if found."""
        grant = await self._find(session, ref, grantee_id)
        if grant is None:
            return False
        await session.delete(grant)
        await session.flush()
        return True

    async def list_on_resource(self, session: AsyncSession, ref: ResourceRef) -> list[CollaboratorBase]:
        """List every grant (expired included) placed directly on *ref*."""
        model = self._collaborator_model
        result = await session.execute(
            select(model)
            .where(model.resource_type == ref.type.value, model.resource_id == ref.id)
            .order_by(model.created_at.asc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

    async def list_shared_with(
        self,
        session: AsyncSession,
        grantee_id: str,
        *,
        resource_type: str | None = None,
    ) -> list[CollaboratorBase]:
        """List non-expired grants held by *grantee_id*."""
        model = self._collaborator_model
        now = utcnow()
        conds = [
            model.grantee_id == grantee_id,
            or_(model.expires_at.is_(None), model.expires_at > now),  # type: ignore[union-attr]
        ]
        if resource_type is not None:
            conds.append(model.resource_type == resource_type)
        result = await session.execute(
            select(model).where(*conds).order_by(model.created_at.desc())  # type: ignore[union-attr]
        )
        # SQLite compares naive timestamps; re-check in Python
        return [g for g in result.scalars().all() if not is_expired(g.expires_at, now)]

    async def remove_for_resources(self, session: AsyncSession, refs: list[ResourceRef]) -> int:
        """Delete every grant on *refs* (used when resources are purged)."""
        if not refs:
            return 0
        model = self._collaborator_model
        total = 0
        for rtype in {r.type for r in refs}:
            ids = [r.id for r in refs if r.type is rtype]
            result = await session.execute(
                delete(model).where(
                    model.resource_type == rtype.value,
                    model.resource_id.in_(ids),  # type: ignore[union-attr]
                )
            )
            total += result.rowcount or 0
        return total

    async def cleanup_expired(self, session: AsyncSession) -> int:
        """Delete grants whose expiry has passed. Returns the number removed."""
        model = self._collaborator_model
        now = utcnow()
        result = await session.execute(select(model).where(model.expires_at.is_not(None)))  # type: ignore[union-attr]
        expired = [g for g in result.scalars().all() if is_expired(g.expires_at, now)]
        for grant in expired:
            await session.delete(grant)
        await session.flush()
        if expired:
            logger.info("Removed %d expired collaborator grants", len(expired))
        return len(expired)
