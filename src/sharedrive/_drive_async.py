"""DriveAsync — primary async facade over the drive services."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import select

from sharedrive.config import get_settings
from sharedrive.events import MUTATIONS, DriveEvent, EventBus, EventType
from sharedrive.fs.activity import LOGGED_EVENTS, ActivityService, access_to_info
from sharedrive.fs.access import AccessResolver
from sharedrive.fs.audit import AuditService
from sharedrive.fs.blobs import LocalBlobStore
from sharedrive.fs.collaborators import CollaboratorService, grant_to_info
from sharedrive.fs.exceptions import (
    AuthenticationRequiredError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from sharedrive.fs.files import FileService
from sharedrive.fs.hierarchy import HierarchyService
from sharedrive.fs.permissions import Action
from sharedrive.fs.sharing import ShareLinkService
from sharedrive.fs.stats import StatsService
from sharedrive.fs.trash import TrashService
from sharedrive.fs.types import (
    DownloadTicket,
    ReconcileReport,
    ResourceRef,
    ResourceType,
    ShareLinkInfo,
    file_to_info,
)
from sharedrive.fs.utils import clamp_page, utcnow, validate_name
from sharedrive.models import (
    AuditLog,
    Collaborator,
    DriveFile,
    FileAccess,
    Folder,
    ShareLink,
    User,
    UserStats,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncEngine

    from sharedrive.config import DriveSettings
    from sharedrive.fs.blobs import BlobStore
    from sharedrive.fs.types import (
        Breadcrumb,
        CollaboratorInfo,
        FileAccessInfo,
        FileInfo,
        FolderInfo,
        ListChildrenResult,
        Principal,
        PublicShareInfo,
        PurgeResult,
        SystemStats,
        TrashListResult,
        TrashResult,
        UserStatsInfo,
    )
    from sharedrive.models.accesses import FileAccessBase
    from sharedrive.models.audit import AuditLogBase
    from sharedrive.models.collaborators import CollaboratorBase
    from sharedrive.models.files import DriveFileBase, FolderBase
    from sharedrive.models.links import ShareLinkBase
    from sharedrive.models.stats import UserStatsBase
    from sharedrive.models.users import UserBase

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class DriveAsync:
    """Async facade wiring hierarchy, access, sharing, trash, stats, and audit.

    Every public operation runs in its own session: commit on success,
    rollback on any exception.  Events fire only after the commit, and the
    stats, audit, and file-access handlers open sessions of their own, so a
    failing rollup never fails the request that caused it.

    Usage::

        drive = DriveAsync(database_url="sqlite+aiosqlite:///drive.db", blob_root="/srv/blobs")
        await drive.create_tables()
        alice = await drive.create_user("alice@example.com")
        reports = await drive.create_folder(Principal(alice.id), "Reports")
    """

    def __init__(
        self,
        *,
        settings: DriveSettings | None = None,
        engine: AsyncEngine | None = None,
        database_url: str | None = None,
        blob_store: BlobStore | None = None,
        blob_root: str | None = None,
        presign_ttl: int | None = None,
        share_token_bytes: int | None = None,
        user_model: type[UserBase] | None = None,
        folder_model: type[FolderBase] | None = None,
        file_model: type[DriveFileBase] | None = None,
        collaborator_model: type[CollaboratorBase] | None = None,
        link_model: type[ShareLinkBase] | None = None,
        stats_model: type[UserStatsBase] | None = None,
        audit_model: type[AuditLogBase] | None = None,
        access_model: type[FileAccessBase] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_engine = engine is None
        self._engine = engine or create_async_engine(
            database_url or self.settings.database_url, echo=self.settings.echo_sql
        )
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        self._blobs: BlobStore = blob_store or LocalBlobStore(blob_root or self.settings.blob_root)
        self._presign_ttl = presign_ttl or self.settings.presign_ttl_seconds
        self._closed = False

        self._user_model = user_model or User
        self._folder_model = folder_model or Folder
        self._file_model = file_model or DriveFile
        self._collaborator_model = collaborator_model or Collaborator
        self._link_model = link_model or ShareLink
        self._stats_model = stats_model or UserStats
        self._audit_model = audit_model or AuditLog
        self._access_model = access_model or FileAccess

        self.hierarchy = HierarchyService(self._folder_model, self._file_model, self._user_model)
        self.access = AccessResolver(self.hierarchy, self._collaborator_model, self._user_model)
        self.files = FileService(self._file_model, self.hierarchy)
        self.collaborators = CollaboratorService(self._collaborator_model, self._user_model)
        self.links = ShareLinkService(
            self._link_model,
            self.hierarchy,
            token_bytes=share_token_bytes or self.settings.share_token_bytes,
        )
        self.trash_service = TrashService(
            self.hierarchy, self.collaborators, self.links, self._folder_model, self._file_model
        )
        self.stats = StatsService(
            self._stats_model,
            self._file_model,
            self._link_model,
            self._user_model,
            self._collaborator_model,
        )
        self.audit = AuditService(self._audit_model)
        self.activity = ActivityService(self._access_model, self._file_model)

        self._event_bus = EventBus()
        self._event_bus.subscribe(self._on_stats_event, *MUTATIONS)
        self._event_bus.subscribe(self._on_audit_event, *MUTATIONS)
        self._event_bus.subscribe(self._on_activity_event, *LOGGED_EVENTS)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        """Yield a session that commits on success and rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_tables(self) -> None:
        """Create every drive table that does not exist yet."""
        models = (
            self._user_model,
            self._folder_model,
            self._file_model,
            self._collaborator_model,
            self._link_model,
            self._stats_model,
            self._audit_model,
            self._access_model,
        )
        async with self._engine.begin() as conn:
            for model in models:
                table = model.__table__  # type: ignore[attr-defined]
                await conn.run_sync(lambda c, t=table: t.create(c, checkfirst=True))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._event_bus.clear()
        if self._owns_engine:
            await self._engine.dispose()

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def blob_store(self) -> BlobStore:
        return self._blobs

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _emit(
        self,
        event_type: EventType,
        owner_id: str,
        ref: ResourceRef | None = None,
        actor_id: str | None = None,
        **fields: Any,
    ) -> None:
        await self._event_bus.emit(
            DriveEvent(
                event_type=event_type,
                owner_id=owner_id,
                resource_type=ref.type.value if ref else "",
                resource_id=ref.id if ref else None,
                actor_id=actor_id,
                **fields,
            )
        )

    async def _on_stats_event(self, event: DriveEvent) -> None:
        async with self._session() as session:
            await self.stats.handle_event(session, event)

    async def _on_audit_event(self, event: DriveEvent) -> None:
        async with self._session() as session:
            await self.audit.handle_event(session, event)

    async def _on_activity_event(self, event: DriveEvent) -> None:
        async with self._session() as session:
            await self.activity.handle_event(session, event)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_active_user(self, session: AsyncSession, principal: Principal) -> str:
        """Return the principal's user id, refusing anonymous and inactive callers."""
        if principal.user_id is None:
            raise AuthenticationRequiredError("Sign in required")
        if not await self.access.principal_active(session, principal.user_id):
            logger.info("Denied request for inactive or unknown user %s", principal.user_id)
            raise ForbiddenError("account_inactive")
        return principal.user_id

    @staticmethod
    def _require_admin(principal: Principal) -> None:
        if principal.user_id is None:
            raise AuthenticationRequiredError("Sign in required")
        if not principal.is_admin:
            raise ForbiddenError("admin_required")

    def _page(self, page: int, limit: int | None) -> tuple[int, int]:
        return clamp_page(
            page,
            limit or self.settings.default_page_limit,
            self.settings.default_page_limit,
            self.settings.max_page_limit,
        )

    async def _destination_owner(
        self, session: AsyncSession, principal: Principal, folder_id: str | None
    ) -> str:
        """Owner of new content placed in *folder_id*; writing there needs WRITE on it."""
        user_id = await self._require_active_user(session, principal)
        if folder_id is None:
            return user_id
        folder = await self.access.require(session, principal, ResourceRef.folder(folder_id), Action.WRITE)
        return folder.owner_id

    async def _delete_blobs(self, object_refs: list[str]) -> int:
        """Delete purged blobs after commit.  Failures are logged, never raised."""
        failed = 0
        for object_ref in object_refs:
            try:
                await self._blobs.delete(object_ref)
            except Exception:
                failed += 1
                logger.warning("Failed to delete blob %s after purge", object_ref, exc_info=True)
        return failed

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        *,
        display_name: str = "",
        is_admin: bool = False,
        email_verified: bool = False,
        user_id: str | None = None,
    ) -> UserBase:
        """Register a user record.  Credentials live with the authentication layer."""
        email = email.strip().lower()
        if not email or "@" not in email:
            raise ValidationError(f"Invalid email: {email!r}")
        model = self._user_model
        async with self._session() as session:
            existing = await session.execute(select(model.id).where(model.email == email))
            if existing.first() is not None:
                raise ConflictError(f"Email already registered: {email}")
            kwargs: dict[str, Any] = {}
            if user_id is not None:
                kwargs["id"] = user_id
            user = model(
                email=email,
                display_name=display_name,
                is_admin=is_admin,
                email_verified=email_verified,
                **kwargs,
            )
            session.add(user)
            await session.flush()
        return user

    async def get_user(self, user_id: str) -> UserBase:
        async with self._session() as session:
            user = await session.get(self._user_model, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
        return user

    async def set_user_flags(
        self,
        principal: Principal,
        user_id: str,
        *,
        is_active: bool | None = None,
        is_admin: bool | None = None,
        email_verified: bool | None = None,
    ) -> UserBase:
        """Admin-only: toggle account flags."""
        self._require_admin(principal)
        async with self._session() as session:
            user = await session.get(self._user_model, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            if is_active is not None:
                user.is_active = is_active
            if is_admin is not None:
                user.is_admin = is_admin
            if email_verified is not None:
                user.email_verified = email_verified
            user.updated_at = utcnow()
            await session.flush()
        logger.info("User %s flags updated by %s", user_id, principal.user_id)
        return user

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def create_folder(
        self,
        principal: Principal,
        name: str,
        parent_id: str | None = None,
        *,
        color: str | None = None,
    ) -> FolderInfo:
        async with self._session() as session:
            owner_id = await self._destination_owner(session, principal, parent_id)
            await self.hierarchy.lock_tree(session, owner_id)
            folder = await self.hierarchy.create_folder(session, owner_id, name, parent_id, color=color)
            info = await self.hierarchy.folder_info(session, folder)
        return info

    async def get_folder(self, principal: Principal, folder_id: str) -> FolderInfo:
        async with self._session() as session:
            folder = await self.access.require(session, principal, ResourceRef.folder(folder_id), Action.READ)
            info = await self.hierarchy.folder_info(session, folder)  # type: ignore[arg-type]
        return info

    async def update_folder(
        self,
        principal: Principal,
        folder_id: str,
        *,
        name: str | None = None,
        color: str | None = None,
    ) -> FolderInfo:
        """Rename and/or recolor a folder (editor or owner)."""
        async with self._session() as session:
            folder = await self.access.require(session, principal, ResourceRef.folder(folder_id), Action.RENAME)
            if name is not None:
                await self.hierarchy.lock_tree(session, folder.owner_id, folder)
            folder = await self.hierarchy.update_folder(session, folder, name=name, color=color)  # type: ignore[arg-type]
            info = await self.hierarchy.folder_info(session, folder)
        return info

    async def move_folder(
        self, principal: Principal, folder_id: str, new_parent_id: str | None
    ) -> FolderInfo:
        """Reparent a folder.  Needs MOVE on the folder and WRITE on the destination."""
        ref = ResourceRef.folder(folder_id)
        async with self._session() as session:
            folder = await self.access.require(session, principal, ref, Action.MOVE)
            if new_parent_id is not None:
                await self.access.require(session, principal, ResourceRef.folder(new_parent_id), Action.WRITE)
            elif folder.owner_id != principal.user_id:
                raise ForbiddenError("owner_required")
            await self.hierarchy.lock_tree(session, folder.owner_id, folder)
            folder = await self.hierarchy.move_folder(session, folder, new_parent_id)  # type: ignore[arg-type]
            info = await self.hierarchy.folder_info(session, folder)
        await self._emit(
            EventType.RESOURCE_MOVED, info.owner_id, ref, principal.user_id, details=f"to={new_parent_id}"
        )
        return info

    async def list_children(
        self,
        principal: Principal,
        folder_id: str | None = None,
        *,
        page: int = 1,
        limit: int | None = None,
        search: str | None = None,
    ) -> ListChildrenResult:
        """One page of a folder (or the caller's root when *folder_id* is None)."""
        page, limit = self._page(page, limit)
        async with self._session() as session:
            if folder_id is None:
                owner_id = await self._require_active_user(session, principal)
            else:
                folder = await self.access.require(session, principal, ResourceRef.folder(folder_id), Action.READ)
                owner_id = folder.owner_id
            result = await self.hierarchy.list_children(
                session, owner_id, folder_id, page=page, limit=limit, search=search
            )
        return result

    async def breadcrumbs(self, principal: Principal, folder_id: str) -> list[Breadcrumb]:
        """Path from the highest folder the caller may read down to *folder_id*.

        Owners get the full chain; a collaborator's chain starts at the
        top-most folder their grants reach.
        """
        async with self._session() as session:
            folder = await self.access.require(session, principal, ResourceRef.folder(folder_id), Action.READ)
            crumbs = await self.hierarchy.breadcrumbs(session, folder_id)
            if folder.owner_id != principal.user_id:
                for i, crumb in enumerate(crumbs):
                    if await self.access.authorize(session, principal, ResourceRef.folder(crumb.id), Action.READ):
                        crumbs = crumbs[i:]
                        break
        return crumbs

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def upload(
        self,
        principal: Principal,
        data: bytes,
        name: str,
        *,
        folder_id: str | None = None,
        mime_type: str | None = None,
        description: str = "",
        tags: str | list[str] | None = None,
        is_public: bool = False,
    ) -> FileInfo:
        """Store *data* in the blob store and record the file.

        If recording fails the stored blob is deleted again.
        """
        validate_name(name, "file name")
        object_ref = await self._blobs.store(data, content_type=mime_type or "application/octet-stream")
        try:
            async with self._session() as session:
                owner_id = await self._destination_owner(session, principal, folder_id)
                if folder_id is not None:
                    await self.hierarchy.lock_tree(session, owner_id)
                file = await self.files.create(
                    session,
                    owner_id,
                    name,
                    len(data),
                    object_ref,
                    folder_id=folder_id,
                    mime_type=mime_type,
                    description=description,
                    tags=tags,
                    is_public=is_public,
                )
                info = file_to_info(file)
        except Exception:
            await self._delete_blobs([object_ref])
            raise
        await self._emit(
            EventType.FILE_UPLOADED,
            info.owner_id,
            ResourceRef.file(info.id),
            principal.user_id,
            files=1,
            size_bytes=info.size_bytes,
        )
        return info

    async def get_file(self, principal: Principal, file_id: str) -> FileInfo:
        ref = ResourceRef.file(file_id)
        async with self._session() as session:
            file = await self.access.require(session, principal, ref, Action.READ)
            info = file_to_info(file)  # type: ignore[arg-type]
        await self._emit(EventType.FILE_VIEWED, info.owner_id, ref, principal.user_id)
        return info

    async def update_file(
        self,
        principal: Principal,
        file_id: str,
        *,
        description: str | None = None,
        tags: str | list[str] | None = None,
        is_public: bool | None = None,
        is_starred: bool | None = None,
    ) -> FileInfo:
        """Edit file metadata.  Changing ``is_public`` counts as sharing."""
        ref = ResourceRef.file(file_id)
        action = Action.SHARE if is_public is not None else Action.WRITE
        async with self._session() as session:
            file = await self.access.require(session, principal, ref, action)
            file = await self.files.update_metadata(
                session,
                file,  # type: ignore[arg-type]
                description=description,
                tags=tags,
                is_public=is_public,
                is_starred=is_starred,
            )
            info = file_to_info(file)
        await self._emit(EventType.FILE_UPDATED, info.owner_id, ref, principal.user_id)
        return info

    async def rename_file(self, principal: Principal, file_id: str, name: str) -> FileInfo:
        ref = ResourceRef.file(file_id)
        async with self._session() as session:
            file = await self.access.require(session, principal, ref, Action.RENAME)
            file = await self.hierarchy.rename_file(session, file, name)  # type: ignore[arg-type]
            info = file_to_info(file)
        await self._emit(EventType.FILE_UPDATED, info.owner_id, ref, principal.user_id, details=f"name={name}")
        return info

    async def move_file(self, principal: Principal, file_id: str, folder_id: str | None) -> FileInfo:
        """Place a file in *folder_id* (None = the owner's root)."""
        ref = ResourceRef.file(file_id)
        async with self._session() as session:
            file = await self.access.require(session, principal, ref, Action.MOVE)
            if folder_id is not None:
                await self.access.require(session, principal, ResourceRef.folder(folder_id), Action.WRITE)
            elif file.owner_id != principal.user_id:
                raise ForbiddenError("owner_required")
            await self.hierarchy.lock_tree(session, file.owner_id, file)
            file = await self.hierarchy.move_file(session, file, folder_id)  # type: ignore[arg-type]
            info = file_to_info(file)
        await self._emit(EventType.RESOURCE_MOVED, info.owner_id, ref, principal.user_id, details=f"to={folder_id}")
        return info

    async def download(self, principal: Principal, file_id: str) -> DownloadTicket:
        """Authorize, count the download, and return a presigned URL."""
        ref = ResourceRef.file(file_id)
        async with self._session() as session:
            file = await self.access.require(session, principal, ref, Action.DOWNLOAD)
            await self.files.increment_downloads(session, file)  # type: ignore[arg-type]
            ticket = await self._ticket(file)  # type: ignore[arg-type]
            owner_id = file.owner_id
        await self._emit(EventType.FILE_DOWNLOADED, owner_id, ref, principal.user_id)
        return ticket

    async def _ticket(self, file: DriveFileBase) -> DownloadTicket:
        url = await self._blobs.presign(file.object_ref, self._presign_ttl)
        return DownloadTicket(
            file_id=file.id,
            url=url,
            name=file.original_name or file.name,
            mime_type=file.mime_type,
            size_bytes=file.size_bytes,
            expires_in=self._presign_ttl,
        )

    async def list_starred(self, principal: Principal, *, limit: int = 50) -> list[FileInfo]:
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            files = await self.files.list_starred(session, user_id, limit=limit)
        return [file_to_info(f) for f in files]

    async def list_recent(self, principal: Principal, *, limit: int = 20) -> list[FileInfo]:
        """Files the caller viewed, downloaded, or edited, most recent first.

        Shared files are included while the caller can still read them.
        """
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            recent = await self.activity.recent_files(session, user_id, limit=limit)
            visible: list[FileInfo] = []
            for file, _ in recent:
                if file.owner_id == user_id or await self.access.authorize(
                    session, principal, ResourceRef.file(file.id), Action.READ
                ):
                    visible.append(file_to_info(file))
        return visible

    async def file_access_history(
        self,
        principal: Principal,
        file_id: str,
        *,
        page: int = 1,
        limit: int | None = None,
    ) -> tuple[list[FileAccessInfo], int]:
        """Who viewed, downloaded, or edited a file, newest first.  Owner only."""
        page, limit = self._page(page, limit)
        async with self._session() as session:
            await self.access.require_owner(session, principal, ResourceRef.file(file_id), Action.READ)
            entries, total = await self.activity.history(session, file_id, page=page, limit=limit)
        return [access_to_info(e) for e in entries], total

    async def cleanup_file_accesses(self, older_than_days: int) -> int:
        """Maintenance: drop file-access entries older than *older_than_days*."""
        async with self._session() as session:
            removed = await self.activity.cleanup(session, older_than_days)
        return removed

    async def search(self, principal: Principal, query: str, *, limit: int = 50) -> list[FileInfo]:
        """Search the caller's own active files by name and tags."""
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            files = await self.files.search(session, user_id, query, limit=limit)
        return [file_to_info(f) for f in files]

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def add_collaborator(
        self,
        principal: Principal,
        ref: ResourceRef,
        grantee_id: str,
        role: str = "viewer",
        *,
        expires_at: datetime | None = None,
    ) -> CollaboratorInfo:
        async with self._session() as session:
            resource = await self.access.require(session, principal, ref, Action.SHARE)
            grant = await self.collaborators.add(
                session,
                ref,
                resource.owner_id,
                grantee_id,
                role,
                principal.user_id,  # type: ignore[arg-type]
                expires_at=expires_at,
            )
            info = grant_to_info(grant)
        await self._emit(
            EventType.SHARE_CHANGED, resource.owner_id, ref, principal.user_id,
            details=f"grant {info.role} to {grantee_id}",
        )
        return info

    async def update_collaborator(
        self,
        principal: Principal,
        grant_id: str,
        *,
        role: str | None = None,
        expires_at: datetime | None = _UNSET,
    ) -> CollaboratorInfo:
        async with self._session() as session:
            grant = await self.collaborators.get(session, grant_id)
            ref = ResourceRef(ResourceType(grant.resource_type), grant.resource_id)
            resource = await self.access.require(session, principal, ref, Action.SHARE)
            kwargs: dict[str, Any] = {"role": role}
            if expires_at is not _UNSET:
                kwargs["expires_at"] = expires_at
            grant = await self.collaborators.update(session, grant, **kwargs)
            info = grant_to_info(grant)
        await self._emit(
            EventType.SHARE_CHANGED, resource.owner_id, ref, principal.user_id,
            details=f"grant {info.role} to {info.grantee_id}",
        )
        return info

    async def remove_collaborator(self, principal: Principal, ref: ResourceRef, grantee_id: str) -> bool:
        async with self._session() as session:
            resource = await self.access.require(session, principal, ref, Action.SHARE)
            removed = await self.collaborators.remove(session, ref, grantee_id)
        if removed:
            await self._emit(
                EventType.SHARE_CHANGED, resource.owner_id, ref, principal.user_id,
                details=f"revoke {grantee_id}",
            )
        return removed

    async def list_collaborators(self, principal: Principal, ref: ResourceRef) -> list[CollaboratorInfo]:
        async with self._session() as session:
            await self.access.require(session, principal, ref, Action.SHARE)
            grants = await self.collaborators.list_on_resource(session, ref)
        return [grant_to_info(g) for g in grants]

    async def shared_with_me(
        self, principal: Principal, *, resource_type: str | None = None
    ) -> list[CollaboratorInfo]:
        """Non-expired grants held by the caller."""
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            grants = await self.collaborators.list_shared_with(session, user_id, resource_type=resource_type)
        return [grant_to_info(g) for g in grants]

    async def cleanup_expired_grants(self) -> int:
        """Maintenance: delete collaborator grants past their expiry."""
        async with self._session() as session:
            removed = await self.collaborators.cleanup_expired(session)
        return removed

    # ------------------------------------------------------------------
    # Share-links
    # ------------------------------------------------------------------

    async def create_share_link(
        self,
        principal: Principal,
        ref: ResourceRef,
        permission: str = "view",
        *,
        password: str | None = None,
        expires_at: datetime | None = None,
        max_downloads: int = 0,
        description: str = "",
    ) -> ShareLinkInfo:
        async with self._session() as session:
            resource = await self.access.require(session, principal, ref, Action.SHARE)
            link = await self.links.create(
                session,
                resource.owner_id,
                ref,
                permission,
                password=password,
                expires_at=expires_at,
                max_downloads=max_downloads,
                description=description,
            )
            info = ShareLinkInfo.from_link(link)
        await self._emit(
            EventType.SHARE_CHANGED, info.owner_id, ref, principal.user_id, details=f"link {info.id} created"
        )
        return info

    async def _managed_link(
        self, session: AsyncSession, principal: Principal, link_id: str
    ) -> ShareLinkBase:
        """Load a link the caller may manage (SHARE on its target, or its owner)."""
        link = await self.links.get(session, link_id)
        if principal.user_id is not None and principal.user_id == link.owner_id:
            await self._require_active_user(session, principal)
            return link
        ref = ResourceRef(ResourceType(link.target_type), link.target_id)
        await self.access.require(session, principal, ref, Action.SHARE)
        return link

    async def get_share_link(self, principal: Principal, link_id: str) -> ShareLinkInfo:
        async with self._session() as session:
            link = await self._managed_link(session, principal, link_id)
            info = ShareLinkInfo.from_link(link)
        return info

    async def list_share_links(
        self, principal: Principal, *, target: ResourceRef | None = None
    ) -> list[ShareLinkInfo]:
        """The caller's own links, optionally narrowed to one target."""
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            links = await self.links.list_for_owner(session, user_id, target=target)
        return [ShareLinkInfo.from_link(link) for link in links]

    async def update_share_link(
        self,
        principal: Principal,
        link_id: str,
        *,
        permission: str | None = None,
        password: str | None = _UNSET,
        expires_at: datetime | None = _UNSET,
        max_downloads: int | None = None,
        description: str | None = None,
        is_active: bool | None = None,
    ) -> ShareLinkInfo:
        kwargs: dict[str, Any] = {
            "permission": permission,
            "max_downloads": max_downloads,
            "description": description,
            "is_active": is_active,
        }
        if password is not _UNSET:
            kwargs["password"] = password
        if expires_at is not _UNSET:
            kwargs["expires_at"] = expires_at
        async with self._session() as session:
            link = await self._managed_link(session, principal, link_id)
            link = await self.links.update(session, link, **kwargs)
            info = ShareLinkInfo.from_link(link)
        await self._emit(
            EventType.SHARE_CHANGED,
            info.owner_id,
            ResourceRef(ResourceType(info.target_type), info.target_id),
            principal.user_id,
            details=f"link {info.id} updated",
        )
        return info

    async def deactivate_share_link(self, principal: Principal, link_id: str) -> ShareLinkInfo:
        return await self.update_share_link(principal, link_id, is_active=False)

    async def delete_share_link(self, principal: Principal, link_id: str) -> None:
        """Delete a link permanently and immediately."""
        async with self._session() as session:
            link = await self._managed_link(session, principal, link_id)
            owner_id = link.owner_id
            ref = ResourceRef(ResourceType(link.target_type), link.target_id)
            await self.links.delete(session, link)
        await self._emit(
            EventType.SHARE_CHANGED, owner_id, ref, principal.user_id, details=f"link {link_id} deleted"
        )

    # -- public (anonymous) access -------------------------------------

    async def resolve_share(self, token: str, password: str | None = None) -> PublicShareInfo:
        async with self._session() as session:
            info = await self.links.resolve_public(session, token, password)
        return info

    async def record_share_view(self, token: str) -> int:
        async with self._session() as session:
            count = await self.links.record_view(session, token)
        return count

    async def share_allows(self, token: str, action: Action, password: str | None = None) -> bool:
        """True if the live link behind *token* grants *action*."""
        async with self._session() as session:
            link, _ = await self.links.authenticate(session, token, password)
        return self.links.authorize_link(link, action)

    async def list_shared_folder(
        self,
        token: str,
        password: str | None = None,
        *,
        folder_id: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> ListChildrenResult:
        """Browse a folder link: its folder, or any active folder beneath it."""
        page, limit = self._page(page, limit)
        async with self._session() as session:
            link, _ = await self.links.authenticate(session, token, password)
            if link.folder_id is None:
                raise ValidationError("Share link does not point at a folder")
            if not self.links.authorize_link(link, Action.READ):
                raise ForbiddenError("insufficient_permission")
            target_id = folder_id or link.folder_id
            folder = await self.links.resolve_public_item(
                session, token, ResourceRef.folder(target_id), password
            )
            result = await self.hierarchy.list_children(
                session, folder.owner_id, folder.id, page=page, limit=limit
            )
        return result

    async def share_download(
        self,
        token: str,
        password: str | None = None,
        *,
        file_id: str | None = None,
    ) -> DownloadTicket:
        """Download through a link.  Counts against its cap and the file's own counter."""
        async with self._session() as session:
            link, file = await self.links.consume_download(session, token, password, file_id=file_id)
            await self.files.increment_downloads(session, file)
            ticket = await self._ticket(file)
            owner_id = file.owner_id
            details = f"via link {link.id}"
        await self._emit(
            EventType.FILE_DOWNLOADED, owner_id, ResourceRef.file(ticket.file_id), None, details=details
        )
        return ticket

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    async def trash(self, principal: Principal, ref: ResourceRef) -> TrashResult:
        """Move a file or folder (with its descendants) to trash.  Owner only."""
        async with self._session() as session:
            resource = await self.hierarchy.resolve_resource(session, ref)
            # already-trashed resources only accept restore-class checks
            action = Action.RESTORE if resource.trashed_at is not None else Action.DELETE
            resource = await self.access.require_owner(session, principal, ref, action)
            await self.hierarchy.lock_tree(session, resource.owner_id, resource)
            result = await self.trash_service.trash(session, resource)
            owner_id = resource.owner_id
        if not result.already_in_state:
            await self._emit(
                EventType.RESOURCE_TRASHED,
                owner_id,
                ref,
                principal.user_id,
                files=len(result.affected_files),
                details=f"batch={result.batch_id}",
            )
        return result

    async def restore(self, principal: Principal, ref: ResourceRef, *, cascade: bool = False) -> TrashResult:
        """Restore from trash.  With *cascade*, a folder brings back its own batch."""
        async with self._session() as session:
            resource = await self.access.require_owner(session, principal, ref, Action.RESTORE)
            await self.hierarchy.lock_tree(session, resource.owner_id, resource)
            result = await self.trash_service.restore(session, resource, cascade=cascade)
            owner_id = resource.owner_id
        if not result.already_in_state:
            await self._emit(
                EventType.RESOURCE_RESTORED,
                owner_id,
                ref,
                principal.user_id,
                files=len(result.affected_files),
                details="relocated_to_root" if result.relocated_to_root else "",
            )
        return result

    async def purge(self, principal: Principal, ref: ResourceRef) -> PurgeResult:
        """Permanently delete a trashed resource and everything beneath it."""
        async with self._session() as session:
            resource = await self.access.require_owner(session, principal, ref, Action.PURGE)
            await self.hierarchy.lock_tree(session, resource.owner_id, resource)
            result = await self.trash_service.purge(session, resource)
        await self._after_purge(result, ref, principal.user_id)
        return result

    async def empty_trash(self, principal: Principal) -> PurgeResult:
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            await self.hierarchy.lock_tree(session, user_id)
            result = await self.trash_service.empty_trash(session, user_id)
        if result.total_purged:
            await self._after_purge(result, None, principal.user_id)
        return result

    async def list_trash(
        self, principal: Principal, *, page: int = 1, limit: int | None = None
    ) -> TrashListResult:
        page, limit = self._page(page, limit)
        async with self._session() as session:
            user_id = await self._require_active_user(session, principal)
            result = await self.trash_service.list_trash(session, user_id, page=page, limit=limit)
        return result

    async def purge_expired(self, older_than_days: int | None = None) -> list[PurgeResult]:
        """Maintenance: purge trash older than the retention window."""
        days = self.settings.trash_retention_days if older_than_days is None else older_than_days
        async with self._session() as session:
            results = await self.trash_service.purge_expired(session, days)
        for result in results:
            await self._after_purge(result, None, None)
        return results

    async def _after_purge(self, result: PurgeResult, ref: ResourceRef | None, actor_id: str | None) -> None:
        await self._delete_blobs(result.object_refs)
        await self._emit(
            EventType.RESOURCE_PURGED,
            result.owner_id,  # type: ignore[arg-type]
            ref,
            actor_id,
            files=len(result.purged_files),
            active_files=result.active_files_purged,
            size_bytes=result.purged_bytes,
            downloads=result.downloads,
            details=f"folders={len(result.purged_folders)}",
        )

    # ------------------------------------------------------------------
    # Stats and audit
    # ------------------------------------------------------------------

    async def get_stats(self, principal: Principal, user_id: str | None = None) -> UserStatsInfo:
        """Dashboard rollup for the caller, or for anyone when called by an admin."""
        async with self._session() as session:
            caller = await self._require_active_user(session, principal)
            target = user_id or caller
            if target != caller and not principal.is_admin:
                raise ForbiddenError("admin_required")
            info = await self.stats.get(session, target)
        return info

    async def system_stats(self, principal: Principal) -> SystemStats:
        self._require_admin(principal)
        async with self._session() as session:
            result = await self.stats.system_stats(session)
        return result

    async def reconcile(self) -> ReconcileReport:
        """Recompute every user's rollup from source tables, one session per user."""
        report = ReconcileReport()
        async with self._session() as session:
            user_ids = await self.stats.user_ids(session)
        for user_id in user_ids:
            report.users_checked += 1
            try:
                async with self._session() as session:
                    if await self.stats.recompute(session, user_id):
                        report.users_corrected.append(user_id)
            except Exception:
                logger.warning("Stats recompute failed for %s", user_id, exc_info=True)
                report.failures.append(user_id)
        logger.info(
            "Reconciled %d users: %d corrected, %d failed",
            report.users_checked, len(report.users_corrected), len(report.failures),
        )
        return report

    async def list_audit(
        self,
        principal: Principal,
        *,
        owner_id: str | None = None,
        resource_id: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> tuple[list[AuditLogBase], int]:
        """Audit entries for the caller's resources; admins may see any owner's."""
        page, limit = self._page(page, limit)
        async with self._session() as session:
            caller = await self._require_active_user(session, principal)
            if not principal.is_admin:
                if owner_id not in (None, caller):
                    raise ForbiddenError("admin_required")
                owner_id = caller
            entries, total = await self.audit.list_entries(
                session, owner_id=owner_id, resource_id=resource_id, page=page, limit=limit
            )
        return entries, total
