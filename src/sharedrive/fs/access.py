"""AccessResolver — who can do what to which file or folder right now.

Gathers an ``AccessSnapshot`` (resource, owner, trash state, ancestor
chain, and the principal's grants along it) and hands it to the pure
interpreter in ``permissions.evaluate``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlmodel import select

from .exceptions import AuthenticationRequiredError, ForbiddenError, InvalidStateError
from .permissions import AccessSnapshot, Action, GrantEntry, Role, evaluate
from .types import AccessDecision, ResourceRef, ResourceType

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.models.collaborators import CollaboratorBase
    from sharedrive.models.files import DriveFileBase, FolderBase
    from sharedrive.models.users import UserBase

    from .hierarchy import HierarchyService
    from .types import Principal

logger = logging.getLogger(__name__)


class AccessResolver:
    """Authorizes principals against files and folders.

    Owners may do anything to an active resource; everyone else needs a
    collaborator grant whose role covers the action, found on the resource
    itself or the closest ancestor folder.  Trashed resources accept only
    restore and purge, and only from their owner.
    """

    def __init__(
        self,
        hierarchy: HierarchyService,
        collaborator_model: type[CollaboratorBase],
        user_model: type[UserBase],
    ) -> None:
        self._hierarchy = hierarchy
        self._collaborator_model = collaborator_model
        self._user_model = user_model

    async def principal_active(self, session: AsyncSession, user_id: str) -> bool:
        model = self._user_model
        result = await session.execute(select(model.is_active).where(model.id == user_id))
        row = result.first()
        return bool(row and row[0])

    async def snapshot(
        self,
        session: AsyncSession,
        principal: Principal,
        ref: ResourceRef,
    ) -> tuple[FolderBase | DriveFileBase, AccessSnapshot]:
        """Load *ref* and everything ``evaluate`` needs to decide on it."""
        resource, chain = await self._hierarchy.ancestor_chain(session, ref)
        snap = AccessSnapshot(
            resource=ref,
            owner_id=resource.owner_id,
            trashed=resource.trashed_at is not None,
            chain=chain,
        )
        if principal.user_id is None:
            return resource, snap

        snap.principal_active = await self.principal_active(session, principal.user_id)
        if principal.user_id == resource.owner_id:
            return resource, snap

        model = self._collaborator_model
        result = await session.execute(
            select(model).where(
                model.grantee_id == principal.user_id,
                model.resource_id.in_([r.id for r in chain]),  # type: ignore[union-attr]
            )
        )
        wanted = set(chain)
        for grant in result.scalars().all():
            key = ResourceRef(ResourceType(grant.resource_type), grant.resource_id)
            if key not in wanted:
                continue
            snap.grants[key] = GrantEntry(
                resource=key,
                role=Role(grant.role),
                expires_at=grant.expires_at,
            )
        return resource, snap

    async def authorize(
        self,
        session: AsyncSession,
        principal: Principal,
        ref: ResourceRef,
        action: Action,
        *,
        now: datetime | None = None,
    ) -> AccessDecision:
        """Return an allow/deny decision.  Raises ``NotFoundError`` if *ref* is absent."""
        _, snap = await self.snapshot(session, principal, ref)
        decision = evaluate(snap, principal, action, now)
        if not decision.allowed:
            logger.debug(
                "Denied %s on %s %s for %s: %s",
                action.value, ref.type.value, ref.id, principal.user_id, decision.reason,
            )
        return decision

    async def require(
        self,
        session: AsyncSession,
        principal: Principal,
        ref: ResourceRef,
        action: Action,
    ) -> FolderBase | DriveFileBase:
        """Authorize and return the resource, raising on denial.

        Anonymous callers get ``AuthenticationRequiredError``; the owner
        touching a trashed resource gets ``InvalidStateError``; every other
        denial is a ``ForbiddenError`` carrying the reason.
        """
        if principal.user_id is None:
            raise AuthenticationRequiredError("Sign in required")
        resource, snap = await self.snapshot(session, principal, ref)
        decision = evaluate(snap, principal, action)
        if decision.allowed:
            return resource
        logger.info(
            "Denied %s on %s %s for %s: %s",
            action.value, ref.type.value, ref.id, principal.user_id, decision.reason,
        )
        if decision.reason == "trashed" and principal.user_id == snap.owner_id:
            raise InvalidStateError(f"{ref.type.value.capitalize()} is in trash: {ref.id}")
        raise ForbiddenError(decision.reason)

    async def require_owner(
        self,
        session: AsyncSession,
        principal: Principal,
        ref: ResourceRef,
        action: Action,
    ) -> FolderBase | DriveFileBase:
        """Like ``require`` but collaborators are refused even when their role covers *action*."""
        resource = await self.require(session, principal, ref, action)
        if resource.owner_id != principal.user_id:
            logger.info("Denied %s on %s %s for %s: owner_required",
                        action.value, ref.type.value, ref.id, principal.user_id)
            raise ForbiddenError("owner_required")
        return resource
