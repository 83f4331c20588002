"""ShareLinkService — tokenized public links to a file or folder.

Links are checked lazily at access time; nothing sweeps expired links.
Download counting is a single conditional UPDATE so concurrent downloads
against a nearly exhausted link can never push ``download_count`` past
``max_downloads``.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from sqlalchemy import and_, case, delete, or_, update
from sqlmodel import select
from werkzeug.security import check_password_hash, generate_password_hash

from .exceptions import (
    ExhaustedError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .permissions import Action, LinkPermission, link_allows
from .types import PublicShareInfo, ResourceRef, ResourceType
from .utils import is_expired, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.models.files import DriveFileBase, FolderBase
    from sharedrive.models.links import ShareLinkBase

    from .hierarchy import HierarchyService

logger = logging.getLogger(__name__)

MIN_TOKEN_BYTES = 16
"""128 bits of entropy."""

MIN_PASSWORD_LENGTH = 4
MAX_PASSWORD_LENGTH = 50
MAX_DESCRIPTION_LENGTH = 500

_UNSET = object()


def _validate_password(password: str) -> str:
    if not (MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH):
        raise ValidationError(
            f"Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters"
        )
    return generate_password_hash(password)


def _validate_description(description: str) -> str:
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Description too long (max {MAX_DESCRIPTION_LENGTH} characters)")
    return description


def link_exhausted(link: ShareLinkBase) -> bool:
    return link.max_downloads > 0 and link.download_count >= link.max_downloads


class ShareLinkService:
    """Share-link CRUD, public resolution, and download accounting.

    Constructor receives the concrete models and the hierarchy service so
    folder links can reach descendants.
    """

    def __init__(
        self,
        link_model: type[ShareLinkBase],
        hierarchy: HierarchyService,
        *,
        token_bytes: int = 32,
    ) -> None:
        self._link_model = link_model
        self._hierarchy = hierarchy
        self._token_bytes = max(token_bytes, MIN_TOKEN_BYTES)

    # ------------------------------------------------------------------
    # Tokens / lookup
    # ------------------------------------------------------------------

    def generate_token(self) -> str:
        """URL-safe random token with at least 128 bits of entropy."""
        return secrets.token_urlsafe(self._token_bytes)

    async def get_by_token(self, session: AsyncSession, token: str) -> ShareLinkBase | None:
        model = self._link_model
        result = await session.execute(select(model).where(model.token == token))
        return result.scalar_one_or_none()

    async def get(self, session: AsyncSession, link_id: str) -> ShareLinkBase:
        model = self._link_model
        result = await session.execute(select(model).where(model.id == link_id))
        link = result.scalar_one_or_none()
        if link is None:
            raise NotFoundError(f"Share link not found: {link_id}")
        return link

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        session: AsyncSession,
        owner_id: str,
        target: ResourceRef,
        permission: str | LinkPermission = LinkPermission.VIEW,
        *,
        password: str | None = None,
        expires_at: datetime | None = None,
        max_downloads: int = 0,
        description: str = "",
    ) -> ShareLinkBase:
        """Create a link on *target*. Flushes but does not commit.

        The target must exist, belong to *owner_id*, and not be trashed.
        """
        perm = LinkPermission.parse(permission)
        if max_downloads < 0:
            raise ValidationError("max_downloads cannot be negative")
        if expires_at is not None and is_expired(expires_at):
            raise ValidationError("expires_at must be in the future")

        resource = await self._hierarchy.resolve_resource(session, target)
        if resource.owner_id != owner_id:
            raise ForbiddenError("owner_required")
        if resource.trashed_at is not None:
            raise InvalidStateError(f"Cannot share a trashed {target.type.value}")

        token = self.generate_token()
        while await self.get_by_token(session, token) is not None:
            token = self.generate_token()

        link = self._link_model(
            token=token,
            owner_id=owner_id,
            file_id=target.id if target.type is ResourceType.FILE else None,
            folder_id=target.id if target.type is ResourceType.FOLDER else None,
            permission=perm.value,
            password_hash=_validate_password(password) if password else None,
            description=_validate_description(description or ""),
            expires_at=expires_at,
            max_downloads=max_downloads,
        )
        session.add(link)
        await session.flush()
        logger.debug("Created %s link %s on %s %s", perm.value, link.id, target.type.value, target.id)
        return link

    async def list_for_owner(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        target: ResourceRef | None = None,
    ) -> list[ShareLinkBase]:
        model = self._link_model
        conds = [model.owner_id == owner_id]
        if target is not None:
            column = model.file_id if target.type is ResourceType.FILE else model.folder_id
            conds.append(column == target.id)
        result = await session.execute(
            select(model).where(*conds).order_by(model.created_at.desc(), model.id.asc())  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

    async def update(
        self,
        session: AsyncSession,
        link: ShareLinkBase,
        *,
        permission: str | LinkPermission | None = None,
        password: str | None | object = _UNSET,
        expires_at: datetime | None | object = _UNSET,
        max_downloads: int | None = None,
        description: str | None = None,
        is_active: bool | None = None,
    ) -> ShareLinkBase:
        """Update link settings.  ``password=None`` / ``expires_at=None`` clear them."""
        if permission is not None:
            link.permission = LinkPermission.parse(permission).value
        if password is not _UNSET:
            link.password_hash = _validate_password(password) if password else None  # type: ignore[arg-type]
        if expires_at is not _UNSET:
            if expires_at is not None and is_expired(expires_at):  # type: ignore[arg-type]
                raise ValidationError("expires_at must be in the future")
            link.expires_at = expires_at  # type: ignore[assignment]
        if max_downloads is not None:
            if max_downloads < 0:
                raise ValidationError("max_downloads cannot be negative")
            link.max_downloads = max_downloads
        if description is not None:
            link.description = _validate_description(description)
        if is_active is not None:
            link.is_active = is_active
        link.updated_at = utcnow()
        await session.flush()
        return link

    async def deactivate(self, session: AsyncSession, link: ShareLinkBase) -> ShareLinkBase:
        return await self.update(session, link, is_active=False)

    async def delete(self, session: AsyncSession, link: ShareLinkBase) -> None:
        """Delete permanently; there is no trash stage for links."""
        await session.delete(link)
        await session.flush()

    async def delete_for_targets(self, session: AsyncSession, refs: list[ResourceRef]) -> int:
        """Delete every link pointing at *refs* (used when resources are purged)."""
        model = self._link_model
        file_ids = [r.id for r in refs if r.type is ResourceType.FILE]
        folder_ids = [r.id for r in refs if r.type is ResourceType.FOLDER]
        if not file_ids and not folder_ids:
            return 0
        result = await session.execute(
            delete(model).where(
                or_(
                    model.file_id.in_(file_ids),  # type: ignore[union-attr]
                    model.folder_id.in_(folder_ids),  # type: ignore[union-attr]
                )
            )
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Public resolution
    # ------------------------------------------------------------------

    def _check_usable(self, link: ShareLinkBase) -> None:
        """Raise if the link is inactive, expired, or out of downloads.

        A link deactivated because its cap was reached reports the cap.
        """
        if not link.is_active:
            if link_exhausted(link):
                raise ExhaustedError()
            raise ForbiddenError("inactive")
        if is_expired(link.expires_at):
            raise ForbiddenError("expired")
        if link_exhausted(link):
            raise ExhaustedError()

    @staticmethod
    def _check_password(link: ShareLinkBase, password: str | None) -> None:
        if not link.password_hash:
            return
        if not password:
            raise ForbiddenError("password_required")
        if not check_password_hash(link.password_hash, password):
            raise ForbiddenError("password_mismatch")

    async def _load_usable(self, session: AsyncSession, token: str) -> tuple[ShareLinkBase, FolderBase | DriveFileBase]:
        link = await self.get_by_token(session, token)
        if link is None:
            raise NotFoundError("Share link not found")
        target = await self._hierarchy.get_folder(session, link.folder_id) if link.folder_id else (
            await self._hierarchy.get_file(session, link.file_id)  # type: ignore[arg-type]
        )
        if target is None or target.trashed_at is not None:
            raise NotFoundError("Share link not found")
        self._check_usable(link)
        return link, target

    async def authenticate(
        self, session: AsyncSession, token: str, password: str | None = None
    ) -> tuple[ShareLinkBase, FolderBase | DriveFileBase]:
        """Validate *token* and *password*, returning the link and its target.

        Checks run in a fixed order so a guesser learns nothing about a
        link's password until it is known to be live: not found, inactive,
        expired, download cap, password required, password mismatch.
        """
        try:
            link, target = await self._load_usable(session, token)
            self._check_password(link, password)
        except ForbiddenError as e:
            logger.info("Share link access denied: %s", e.reason)
            raise
        return link, target

    async def resolve_public(
        self, session: AsyncSession, token: str, password: str | None = None
    ) -> PublicShareInfo:
        link, target = await self.authenticate(session, token, password)
        remaining = None
        if link.max_downloads > 0:
            remaining = max(0, link.max_downloads - link.download_count)
        is_file = link.file_id is not None
        return PublicShareInfo(
            token=link.token,
            permission=link.permission,
            target_type=link.target_type,
            target_id=link.target_id,
            name=target.name,
            description=link.description,
            size_bytes=target.size_bytes if is_file else None,  # type: ignore[union-attr]
            mime_type=target.mime_type if is_file else None,  # type: ignore[union-attr]
            expires_at=link.expires_at,
            downloads_remaining=remaining,
        )

    async def resolve_public_item(
        self,
        session: AsyncSession,
        token: str,
        item: ResourceRef,
        password: str | None = None,
    ) -> FolderBase | DriveFileBase:
        """Return *item* if it is the link target or an active descendant of a folder link."""
        link, target = await self.authenticate(session, token, password)
        if item.type.value == link.target_type and item.id == link.target_id:
            return target
        if link.folder_id is None:
            raise ForbiddenError("outside_link_scope")
        resource, chain = await self._hierarchy.ancestor_chain(session, item)
        if resource.trashed_at is not None:
            raise NotFoundError(f"{item.type.value.capitalize()} not found: {item.id}")
        if ResourceRef.folder(link.folder_id) not in chain:
            logger.info("Share link %s used outside its folder for %s", link.id, item.id)
            raise ForbiddenError("outside_link_scope")
        return resource

    @staticmethod
    def authorize_link(link: ShareLinkBase, action: Action) -> bool:
        """True if *link* grants *action*.  Ownership actions are never granted."""
        return link_allows(link.permission, action)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def record_view(self, session: AsyncSession, token: str) -> int:
        """Count a landing-page view.  Needs no password, but the link must be live."""
        link, _ = await self._load_usable(session, token)
        model = self._link_model
        await session.execute(
            update(model)
            .where(model.id == link.id)
            .values(view_count=model.view_count + 1)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(link)
        return link.view_count

    async def consume_download(
        self,
        session: AsyncSession,
        token: str,
        password: str | None = None,
        *,
        file_id: str | None = None,
    ) -> tuple[ShareLinkBase, DriveFileBase]:
        """Count one download through *token* and return ``(link, file)``.

        The increment is a compare-and-swap: it only applies while the link
        is active and under its cap, and deactivates the link in the same
        statement when the cap is reached.  A losing concurrent caller gets
        ``ExhaustedError``.
        """
        link, _ = await self.authenticate(session, token, password)
        if not link_allows(link.permission, Action.DOWNLOAD):
            raise ForbiddenError("insufficient_permission")

        if link.file_id is None and file_id is None:
            raise ValidationError("file_id is required for folder links")
        item = ResourceRef.file(file_id or link.file_id)  # type: ignore[arg-type]
        file = await self.resolve_public_item(session, token, item, password)

        model = self._link_model
        result = await session.execute(
            update(model)
            .where(
                model.id == link.id,
                model.is_active.is_(True),  # type: ignore[union-attr]
                or_(model.max_downloads == 0, model.download_count < model.max_downloads),
            )
            .values(
                download_count=model.download_count + 1,
                is_active=case(
                    (
                        and_(
                            model.max_downloads > 0,
                            model.download_count + 1 >= model.max_downloads,
                        ),
                        False,
                    ),
                    else_=model.is_active,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.refresh(link)
        if result.rowcount != 1:
            logger.info("Share link %s lost a download race at the cap", link.id)
            raise ExhaustedError()
        return link, file  # type: ignore[return-value]
