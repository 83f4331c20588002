"""TrashService — soft-delete, restore, and purge with folder cascades.

A cascade stamps every affected row with the same ``trashed_at`` and a
shared ``trash_batch_id``.  Cascade-restore brings back exactly the rows of
the folder's batch; rows trashed earlier on their own stay in trash.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlmodel import select

from .exceptions import InvalidStateError
from .types import (
    PurgeResult,
    ResourceRef,
    ResourceType,
    TrashListResult,
    TrashResult,
    file_to_info,
    folder_to_info,
)
from .utils import as_utc, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.models.files import DriveFileBase, FolderBase

    from .collaborators import CollaboratorService
    from .hierarchy import HierarchyService
    from .sharing import ShareLinkService

logger = logging.getLogger(__name__)


class TrashService:
    """Trash lifecycle: ``Active -> Trashed -> {Active, purged}``.

    Callers authorize first (owner only); this service enforces the state
    machine and the cascade rules.  Purging also removes the grants and
    share-links attached to every purged row and reports the blob object
    references the caller must delete.
    """

    def __init__(
        self,
        hierarchy: HierarchyService,
        collaborators: CollaboratorService,
        links: ShareLinkService,
        folder_model: type[FolderBase],
        file_model: type[DriveFileBase],
    ) -> None:
        self._hierarchy = hierarchy
        self._collaborators = collaborators
        self._links = links
        self._folder_model = folder_model
        self._file_model = file_model

    @staticmethod
    def _ref(resource: FolderBase | DriveFileBase) -> ResourceRef:
        if hasattr(resource, "parent_id"):
            return ResourceRef.folder(resource.id)
        return ResourceRef.file(resource.id)

    @staticmethod
    def _parent_id(resource: FolderBase | DriveFileBase) -> str | None:
        if hasattr(resource, "parent_id"):
            return resource.parent_id  # type: ignore[union-attr]
        return resource.folder_id  # type: ignore[union-attr]

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    async def trash(self, session: AsyncSession, resource: FolderBase | DriveFileBase) -> TrashResult:
        """Move *resource* (and, for folders, every active descendant) to trash.

        Trashing something already in trash is a no-op that reports the
        current state.
        """
        ref = self._ref(resource)
        if resource.trashed_at is not None:
            return TrashResult(
                resource=ref,
                batch_id=resource.trash_batch_id,
                trashed_at=as_utc(resource.trashed_at),
                already_in_state=True,
            )

        now = utcnow()
        batch_id = str(uuid.uuid4())
        result = TrashResult(resource=ref, batch_id=batch_id, trashed_at=now)

        def _stamp(row: FolderBase | DriveFileBase) -> None:
            row.trashed_at = now
            row.trash_batch_id = batch_id
            row.updated_at = now

        _stamp(resource)
        if ref.type is ResourceType.FOLDER:
            result.affected_folders.append(resource.id)
            folders, files = await self._hierarchy.descendants(session, resource.id)
            for folder in folders:
                if folder.trashed_at is None:
                    _stamp(folder)
                    result.affected_folders.append(folder.id)
            for file in files:
                if file.trashed_at is None:
                    _stamp(file)
                    result.affected_files.append(file.id)
        else:
            result.affected_files.append(resource.id)

        await self._hierarchy.touch(session, self._parent_id(resource))
        await session.flush()
        logger.debug(
            "Trashed %s %s (batch %s, %d rows)", ref.type.value, ref.id, batch_id, result.total_affected
        )
        return result

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(
        self,
        session: AsyncSession,
        resource: FolderBase | DriveFileBase,
        *,
        cascade: bool = False,
    ) -> TrashResult:
        """Bring *resource* back from trash.

        When its parent folder is gone or still trashed, the resource is
        relocated to the owner's root.  With ``cascade=True`` a folder also
        restores every descendant that was trashed in the same batch.
        """
        ref = self._ref(resource)
        if resource.trashed_at is None:
            return TrashResult(resource=ref, already_in_state=True)

        batch_id = resource.trash_batch_id
        result = TrashResult(resource=ref, batch_id=batch_id)
        now = utcnow()

        parent_id = self._parent_id(resource)
        if parent_id is not None:
            parent = await self._hierarchy.get_folder(session, parent_id, for_update=True)
            if parent is None or parent.trashed_at is not None:
                result.relocated_to_root = True

        is_folder = ref.type is ResourceType.FOLDER
        if is_folder:
            target_parent = None if result.relocated_to_root else parent_id
            await self._hierarchy.ensure_unique_sibling(
                session, resource.owner_id, target_parent, resource.name, exclude_id=resource.id
            )

        def _clear(row: FolderBase | DriveFileBase) -> None:
            row.trashed_at = None
            row.trash_batch_id = None
            row.updated_at = now

        _clear(resource)
        if result.relocated_to_root:
            if is_folder:
                resource.parent_id = None  # type: ignore[union-attr]
            else:
                resource.folder_id = None  # type: ignore[union-attr]
            logger.info("Restored %s %s to root; parent %s unavailable", ref.type.value, ref.id, parent_id)

        if is_folder:
            result.affected_folders.append(resource.id)
            if cascade and batch_id is not None:
                folders, files = await self._hierarchy.descendants(session, resource.id)
                restored = {resource.id}
                # parents before children, so a child is restored only under a restored parent
                for folder in folders:
                    if folder.trash_batch_id == batch_id and folder.parent_id in restored:
                        _clear(folder)
                        restored.add(folder.id)
                        result.affected_folders.append(folder.id)
                for file in files:
                    if file.trash_batch_id == batch_id and file.folder_id in restored:
                        _clear(file)
                        result.affected_files.append(file.id)
            await self._hierarchy.rebuild_paths(session, resource)  # type: ignore[arg-type]
        else:
            result.affected_files.append(resource.id)

        await self._hierarchy.touch(session, self._parent_id(resource))
        await session.flush()
        return result

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge(self, session: AsyncSession, resource: FolderBase | DriveFileBase) -> PurgeResult:
        """Permanently delete a trashed resource and, for folders, everything beneath it.

        Descendants go regardless of their own trash state.  Returns the
        object references whose blobs the caller must delete.
        """
        ref = self._ref(resource)
        if resource.trashed_at is None:
            raise InvalidStateError(f"Only trashed items can be purged: {ref.id}")

        result = PurgeResult(owner_id=resource.owner_id)
        folders: list[FolderBase] = []
        files: list[DriveFileBase] = []
        if ref.type is ResourceType.FOLDER:
            folders, files = await self._hierarchy.descendants(session, resource.id)
        else:
            files = [resource]  # type: ignore[list-item]

        for file in files:
            result.purged_files.append(file.id)
            result.purged_bytes += file.size_bytes
            result.downloads += file.download_count
            if file.object_ref:
                result.object_refs.append(file.object_ref)
            if file.trashed_at is None:
                result.active_files_purged += 1

        refs = [ResourceRef.file(f.id) for f in files] + [ResourceRef.folder(f.id) for f in folders]
        if ref.type is ResourceType.FOLDER:
            refs.append(ref)
        await self._collaborators.remove_for_resources(session, refs)
        await self._links.delete_for_targets(session, refs)

        for file in files:
            await session.delete(file)
        await session.flush()
        # children before parents
        for folder in reversed(folders):
            result.purged_folders.append(folder.id)
            await session.delete(folder)
            await session.flush()
        if ref.type is ResourceType.FOLDER:
            result.purged_folders.append(resource.id)
            await session.delete(resource)
        await session.flush()

        logger.info(
            "Purged %s %s: %d folders, %d files, %d bytes",
            ref.type.value, ref.id, len(result.purged_folders), len(result.purged_files), result.purged_bytes,
        )
        return result

    # ------------------------------------------------------------------
    # Listing / bulk
    # ------------------------------------------------------------------

    async def _trashed_rows(
        self, session: AsyncSession, owner_id: str | None
    ) -> tuple[list[FolderBase], list[DriveFileBase]]:
        fm = self._folder_model
        dm = self._file_model
        folder_conds = [fm.trashed_at.is_not(None)]  # type: ignore[union-attr]
        file_conds = [dm.trashed_at.is_not(None)]  # type: ignore[union-attr]
        if owner_id is not None:
            folder_conds.append(fm.owner_id == owner_id)
            file_conds.append(dm.owner_id == owner_id)
        folders = (
            await session.execute(
                select(fm)
                .where(*folder_conds)
                .order_by(fm.trashed_at.desc(), fm.id.asc())  # type: ignore[union-attr]
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        files = (
            await session.execute(
                select(dm)
                .where(*file_conds)
                .order_by(dm.trashed_at.desc(), dm.id.asc())  # type: ignore[union-attr]
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        return list(folders), list(files)

    async def top_level_trashed(
        self, session: AsyncSession, owner_id: str | None = None
    ) -> tuple[list[FolderBase], list[DriveFileBase]]:
        """Trashed rows whose parent is not itself trashed, newest first.

        Purging these covers every trashed row exactly once.
        """
        folders, files = await self._trashed_rows(session, owner_id)
        trashed_ids = {f.id for f in folders}
        return (
            [f for f in folders if f.parent_id not in trashed_ids],
            [f for f in files if f.folder_id not in trashed_ids],
        )

    async def list_trash(
        self,
        session: AsyncSession,
        owner_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> TrashListResult:
        """Page through the owner's top-level trash, folders first."""
        folders, files = await self.top_level_trashed(session, owner_id)
        offset = (page - 1) * limit
        folder_page = folders[offset : offset + limit]
        file_offset = max(0, offset - len(folders))
        file_page = files[file_offset : file_offset + (limit - len(folder_page))]
        counts = await self._hierarchy.child_counts(session, [f.id for f in folder_page])
        return TrashListResult(
            folders=[folder_to_info(f, *counts.get(f.id, (0, 0))) for f in folder_page],
            files=[file_to_info(f) for f in file_page],
            total_folders=len(folders),
            total_files=len(files),
            page=page,
            limit=limit,
        )

    async def empty_trash(self, session: AsyncSession, owner_id: str) -> PurgeResult:
        """Purge every top-level trashed item owned by *owner_id*."""
        folders, files = await self.top_level_trashed(session, owner_id)
        total = PurgeResult(owner_id=owner_id)
        for folder in folders:
            total.merge(await self.purge(session, folder))
        for file in files:
            total.merge(await self.purge(session, file))
        return total

    async def purge_expired(self, session: AsyncSession, older_than_days: int) -> list[PurgeResult]:
        """Purge top-level items trashed more than *older_than_days* ago, per owner."""
        cutoff = utcnow() - timedelta(days=older_than_days)

        def _expired(row: FolderBase | DriveFileBase) -> bool:
            trashed_at = as_utc(row.trashed_at)
            return trashed_at is not None and trashed_at < cutoff

        folders, files = await self.top_level_trashed(session)
        owners = sorted({row.owner_id for row in [*folders, *files] if _expired(row)})
        if not owners:
            return []
        # sorted lock order; re-read once every affected tree is locked
        for owner_id in owners:
            await self._hierarchy.lock_tree(session, owner_id)
        folders, files = await self.top_level_trashed(session)

        per_owner: dict[str, PurgeResult] = {}
        for row in [*folders, *files]:
            if row.owner_id not in owners or not _expired(row):
                continue
            bucket = per_owner.setdefault(row.owner_id, PurgeResult(owner_id=row.owner_id))
            bucket.merge(await self.purge(session, row))
        if per_owner:
            logger.info("Retention sweep purged trash for %d owners", len(per_owner))
        return list(per_owner.values())
