"""HierarchyService — folder tree, file placement, paths, and listings.

The tree is a parent-pointer arena: ``parent_id`` (folders) and
``folder_id`` (files) are the source of truth.  ``Folder.path`` is a cache
rebuilt top-down from the parent chain whenever a folder is renamed or
moved.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, update
from sqlmodel import select

from .exceptions import ConflictError, DriveError, InvalidStateError, NotFoundError
from .types import (
    Breadcrumb,
    ListChildrenResult,
    ResourceRef,
    ResourceType,
    file_to_info,
    folder_to_info,
)
from .utils import child_path, escape_like, utcnow, validate_color, validate_name

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.models.files import DriveFileBase, FolderBase
    from sharedrive.models.users import UserBase

    from .types import FolderInfo

logger = logging.getLogger(__name__)

MAX_DEPTH = 256
"""Upper bound on ancestor walks; a longer chain means the tree is corrupt."""


class HierarchyService:
    """Stateless folder-tree operations.

    Receives the concrete folder, file, and user models at construction so
    callers can use custom SQLModel subclasses; receives a session per call.

    Structural changes (create, move, rename, trash, restore, purge) take
    the owner's tree lock first and re-read what they check with
    ``for_update=True``, so two of them on the same tree never both pass a
    check that the other invalidates.
    """

    def __init__(
        self,
        folder_model: type[FolderBase],
        file_model: type[DriveFileBase],
        user_model: type[UserBase],
    ) -> None:
        self._folder_model = folder_model
        self._file_model = file_model
        self._user_model = user_model

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def lock_tree(
        self, session: AsyncSession, owner_id: str, *rows: FolderBase | DriveFileBase
    ) -> None:
        """Take *owner_id*'s tree lock until the session ends, then reload *rows*.

        The lock is a write to the owner's user row: a row lock on
        PostgreSQL, the database write lock on SQLite.  Reloading makes
        anything read before the lock reflect what other writers committed.
        """
        um = self._user_model
        await session.execute(
            update(um)
            .where(um.id == owner_id)
            .values(tree_version=um.tree_version + 1)
            .execution_options(synchronize_session=False)
        )
        for row in rows:
            if await session.get(type(row), row.id, populate_existing=True) is None:
                raise NotFoundError(f"{type(row).__name__} no longer exists: {row.id}")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_folder(
        self,
        session: AsyncSession,
        folder_id: str,
        *,
        for_update: bool = False,
    ) -> FolderBase | None:
        query = select(self._folder_model).where(self._folder_model.id == folder_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def resolve(
        self,
        session: AsyncSession,
        folder_id: str,
        *,
        for_update: bool = False,
    ) -> FolderBase:
        """Return the folder or raise ``NotFoundError``."""
        folder = await self.get_folder(session, folder_id, for_update=for_update)
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    async def get_file(
        self,
        session: AsyncSession,
        file_id: str,
        *,
        for_update: bool = False,
    ) -> DriveFileBase | None:
        query = select(self._file_model).where(self._file_model.id == file_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def resolve_file(
        self,
        session: AsyncSession,
        file_id: str,
        *,
        for_update: bool = False,
    ) -> DriveFileBase:
        """Return the file or raise ``NotFoundError``."""
        file = await self.get_file(session, file_id, for_update=for_update)
        if file is None:
            raise NotFoundError(f"File not found: {file_id}")
        return file

    async def resolve_resource(
        self,
        session: AsyncSession,
        ref: ResourceRef,
        *,
        for_update: bool = False,
    ) -> FolderBase | DriveFileBase:
        if ref.type is ResourceType.FOLDER:
            return await self.resolve(session, ref.id, for_update=for_update)
        return await self.resolve_file(session, ref.id, for_update=for_update)

    # ------------------------------------------------------------------
    # Ancestors / descendants
    # ------------------------------------------------------------------

    async def ancestors(
        self, session: AsyncSession, folder_id: str | None, *, for_update: bool = False
    ) -> list[FolderBase]:
        """Return the folder with id *folder_id* and its ancestors, closest first.

        Raises ``DriveError`` if the parent chain loops or exceeds
        ``MAX_DEPTH``; a missing parent simply ends the chain.
        """
        chain: list[FolderBase] = []
        seen: set[str] = set()
        current = folder_id
        while current is not None:
            if current in seen or len(chain) >= MAX_DEPTH:
                logger.error("Folder parent chain is cyclic or too deep at %s", current)
                raise DriveError(f"Corrupt folder hierarchy at {current}")
            seen.add(current)
            folder = await self.get_folder(session, current, for_update=for_update)
            if folder is None:
                break
            chain.append(folder)
            current = folder.parent_id
        return chain

    async def ancestor_chain(self, session: AsyncSession, ref: ResourceRef) -> tuple[
        FolderBase | DriveFileBase, list[ResourceRef]
    ]:
        """Return ``(resource, chain)`` where chain is the resource then its ancestors."""
        resource = await self.resolve_resource(session, ref)
        if ref.type is ResourceType.FOLDER:
            folders = await self.ancestors(session, resource.id)
            return resource, [ResourceRef.folder(f.id) for f in folders]
        folders = await self.ancestors(session, resource.folder_id)  # type: ignore[union-attr]
        return resource, [ref, *(ResourceRef.folder(f.id) for f in folders)]

    async def is_descendant(self, session: AsyncSession, folder_id: str, ancestor_id: str) -> bool:
        """True if *folder_id* equals *ancestor_id* or lies beneath it."""
        for folder in await self.ancestors(session, folder_id):
            if folder.id == ancestor_id:
                return True
        return False

    async def descendants(
        self, session: AsyncSession, folder_id: str
    ) -> tuple[list[FolderBase], list[DriveFileBase]]:
        """Return every folder and file beneath *folder_id*, trashed or not.

        Walks the tree breadth-first over ``parent_id``; folders are returned
        parents-before-children.
        """
        fm = self._folder_model
        dm = self._file_model
        folders: list[FolderBase] = []
        files: list[DriveFileBase] = []
        seen: set[str] = {folder_id}
        frontier = [folder_id]
        while frontier:
            result = await session.execute(
                select(dm).where(dm.folder_id.in_(frontier)).execution_options(populate_existing=True)  # type: ignore[union-attr]
            )
            files.extend(result.scalars().all())
            result = await session.execute(
                select(fm).where(fm.parent_id.in_(frontier)).execution_options(populate_existing=True)  # type: ignore[union-attr]
            )
            children = [f for f in result.scalars().all() if f.id not in seen]
            seen.update(f.id for f in children)
            folders.extend(children)
            frontier = [f.id for f in children]
        return folders, files

    # ------------------------------------------------------------------
    # Counts / info
    # ------------------------------------------------------------------

    async def child_counts(self, session: AsyncSession, folder_ids: list[str]) -> dict[str, tuple[int, int]]:
        """Return ``{folder_id: (file_count, subfolder_count)}`` over active children."""
        if not folder_ids:
            return {}
        fm = self._folder_model
        dm = self._file_model
        counts = {fid: [0, 0] for fid in folder_ids}
        result = await session.execute(
            select(dm.folder_id, func.count())
            .where(dm.folder_id.in_(folder_ids), dm.trashed_at.is_(None))  # type: ignore[union-attr]
            .group_by(dm.folder_id)
        )
        for fid, n in result.all():
            counts[fid][0] = n
        result = await session.execute(
            select(fm.parent_id, func.count())
            .where(fm.parent_id.in_(folder_ids), fm.trashed_at.is_(None))  # type: ignore[union-attr]
            .group_by(fm.parent_id)
        )
        for fid, n in result.all():
            counts[fid][1] = n
        return {fid: (c[0], c[1]) for fid, c in counts.items()}

    async def folder_info(self, session: AsyncSession, folder: FolderBase) -> FolderInfo:
        counts = await self.child_counts(session, [folder.id])
        file_count, subfolder_count = counts.get(folder.id, (0, 0))
        return folder_to_info(folder, file_count, subfolder_count)

    async def breadcrumbs(self, session: AsyncSession, folder_id: str) -> list[Breadcrumb]:
        """Return the chain from the top-level folder down to *folder_id* inclusive."""
        await self.resolve(session, folder_id)
        chain = await self.ancestors(session, folder_id)
        return [Breadcrumb(id=f.id, name=f.name, path=f.path) for f in reversed(chain)]

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_children(
        self,
        session: AsyncSession,
        owner_id: str,
        folder_id: str | None = None,
        *,
        page: int = 1,
        limit: int = 20,
        search: str | None = None,
    ) -> ListChildrenResult:
        """List active subfolders then files of *folder_id* (``None`` = owner's root).

        Offset pagination runs across the concatenation folders-then-files,
        each ordered by ``created_at`` desc with ``id`` as tiebreaker.
        """
        fm = self._folder_model
        dm = self._file_model

        if folder_id is None:
            folder_conds = [fm.owner_id == owner_id, fm.parent_id.is_(None)]  # type: ignore[union-attr]
            file_conds = [dm.owner_id == owner_id, dm.folder_id.is_(None)]  # type: ignore[union-attr]
        else:
            folder_conds = [fm.parent_id == folder_id]
            file_conds = [dm.folder_id == folder_id]
        folder_conds.append(fm.trashed_at.is_(None))  # type: ignore[union-attr]
        file_conds.append(dm.trashed_at.is_(None))  # type: ignore[union-attr]

        if search:
            pattern = f"%{escape_like(search.lower())}%"
            folder_conds.append(func.lower(fm.name).like(pattern, escape="\\"))
            file_conds.append(
                or_(
                    func.lower(dm.name).like(pattern, escape="\\"),
                    func.lower(dm.original_name).like(pattern, escape="\\"),
                )
            )

        folder_total = (
            await session.execute(select(func.count()).select_from(fm).where(*folder_conds))
        ).scalar_one()
        file_total = (
            await session.execute(select(func.count()).select_from(dm).where(*file_conds))
        ).scalar_one()

        offset = (page - 1) * limit
        folders: list[FolderBase] = []
        if offset < folder_total:
            result = await session.execute(
                select(fm)
                .where(*folder_conds)
                .order_by(fm.created_at.desc(), fm.id.asc())  # type: ignore[union-attr]
                .offset(offset)
                .limit(limit)
            )
            folders = list(result.scalars().all())

        files: list[DriveFileBase] = []
        remaining = limit - len(folders)
        if remaining > 0:
            file_offset = max(0, offset - folder_total)
            result = await session.execute(
                select(dm)
                .where(*file_conds)
                .order_by(dm.created_at.desc(), dm.id.asc())  # type: ignore[union-attr]
                .offset(file_offset)
                .limit(remaining)
            )
            files = list(result.scalars().all())

        counts = await self.child_counts(session, [f.id for f in folders])
        return ListChildrenResult(
            folders=[folder_to_info(f, *counts.get(f.id, (0, 0))) for f in folders],
            files=[file_to_info(f) for f in files],
            total=folder_total + file_total,
            page=page,
            limit=limit,
            folder_id=folder_id,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _active_parent(
        self, session: AsyncSession, parent_id: str | None, owner_id: str
    ) -> FolderBase | None:
        if parent_id is None:
            return None
        parent = await self.get_folder(session, parent_id, for_update=True)
        if parent is None:
            raise NotFoundError(f"Destination folder not found: {parent_id}")
        if parent.owner_id != owner_id:
            raise ConflictError("Destination folder belongs to another owner")
        if parent.trashed_at is not None:
            raise InvalidStateError(f"Destination folder is in trash: {parent_id}")
        return parent

    async def ensure_unique_sibling(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        name: str,
        exclude_id: str | None = None,
    ) -> None:
        fm = self._folder_model
        conds = [
            fm.owner_id == owner_id,
            fm.name == name,
            fm.trashed_at.is_(None),  # type: ignore[union-attr]
        ]
        conds.append(fm.parent_id.is_(None) if parent_id is None else fm.parent_id == parent_id)  # type: ignore[union-attr]
        if exclude_id is not None:
            conds.append(fm.id != exclude_id)
        result = await session.execute(select(fm.id).where(*conds).limit(1))
        if result.first() is not None:
            raise ConflictError(f"A folder named {name!r} already exists here")

    async def touch(self, session: AsyncSession, folder_id: str | None) -> None:
        """Bump ``updated_at`` on the parent whose child set changed."""
        if folder_id is None:
            return
        folder = await self.get_folder(session, folder_id)
        if folder is not None:
            folder.updated_at = utcnow()

    async def create_folder(
        self,
        session: AsyncSession,
        owner_id: str,
        name: str,
        parent_id: str | None = None,
        *,
        color: str | None = None,
    ) -> FolderBase:
        """Create a folder. Flushes but does not commit."""
        name = validate_name(name, "folder name")
        color = validate_color(color)
        parent = await self._active_parent(session, parent_id, owner_id)
        await self.ensure_unique_sibling(session, owner_id, parent_id, name)

        folder = self._folder_model(
            name=name,
            color=color,
            owner_id=owner_id,
            parent_id=parent_id,
            path=child_path(parent.path if parent else None, name),
        )
        session.add(folder)
        await self.touch(session, parent_id)
        await session.flush()
        return folder

    async def update_folder(
        self,
        session: AsyncSession,
        folder: FolderBase,
        *,
        name: str | None = None,
        color: str | None = None,
    ) -> FolderBase:
        """Rename and/or recolor *folder*; renames rebuild descendant paths."""
        if color is not None:
            folder.color = validate_color(color)
        if name is not None:
            name = validate_name(name, "folder name")
            if name != folder.name:
                await self.ensure_unique_sibling(
                    session, folder.owner_id, folder.parent_id, name, exclude_id=folder.id
                )
                folder.name = name
                await self.rebuild_paths(session, folder)
        folder.updated_at = utcnow()
        await session.flush()
        return folder

    async def move_folder(
        self,
        session: AsyncSession,
        folder: FolderBase,
        new_parent_id: str | None,
    ) -> FolderBase:
        """Reparent *folder* under *new_parent_id* (``None`` = root).

        Rejects the move with ``ConflictError`` when the destination is the
        folder itself or any of its descendants: the destination's ancestor
        chain is walked to the root and must not contain the folder.  Call
        with the owner's tree lock held (``lock_tree``) so a concurrent move
        cannot change that chain between the check and the write.
        """
        if folder.trashed_at is not None:
            raise InvalidStateError(f"Folder is in trash: {folder.id}")
        if new_parent_id == folder.id:
            raise ConflictError("Cannot move a folder into itself")
        if new_parent_id is not None:
            for ancestor in await self.ancestors(session, new_parent_id, for_update=True):
                if ancestor.id == folder.id:
                    raise ConflictError("Cannot move a folder into its own descendant")
        await self._active_parent(session, new_parent_id, folder.owner_id)
        if new_parent_id == folder.parent_id:
            return folder
        await self.ensure_unique_sibling(
            session, folder.owner_id, new_parent_id, folder.name, exclude_id=folder.id
        )

        old_parent_id = folder.parent_id
        folder.parent_id = new_parent_id
        folder.updated_at = utcnow()
        await self.rebuild_paths(session, folder)
        await self.touch(session, old_parent_id)
        await self.touch(session, new_parent_id)
        await session.flush()
        logger.debug("Moved folder %s from %s to %s", folder.id, old_parent_id, new_parent_id)
        return folder

    async def move_file(
        self,
        session: AsyncSession,
        file: DriveFileBase,
        new_folder_id: str | None,
    ) -> DriveFileBase:
        """Place *file* in *new_folder_id* (``None`` = root)."""
        if file.trashed_at is not None:
            raise InvalidStateError(f"File is in trash: {file.id}")
        await self._active_parent(session, new_folder_id, file.owner_id)
        if new_folder_id == file.folder_id:
            return file
        old_folder_id = file.folder_id
        file.folder_id = new_folder_id
        file.updated_at = utcnow()
        await self.touch(session, old_folder_id)
        await self.touch(session, new_folder_id)
        await session.flush()
        return file

    async def rename_file(self, session: AsyncSession, file: DriveFileBase, name: str) -> DriveFileBase:
        file.name = validate_name(name, "file name")
        file.updated_at = utcnow()
        await session.flush()
        return file

    async def rebuild_paths(self, session: AsyncSession, folder: FolderBase) -> int:
        """Recompute ``path`` for *folder* and every descendant folder.

        Returns the number of folders whose path changed.
        """
        parent_path = None
        if folder.parent_id is not None:
            parent = await self.get_folder(session, folder.parent_id)
            parent_path = parent.path if parent is not None else None
        folder.path = child_path(parent_path, folder.name)

        changed = 1
        fm = self._folder_model
        frontier = [folder]
        seen = {folder.id}
        while frontier:
            by_id = {f.id: f for f in frontier}
            result = await session.execute(
                select(fm).where(fm.parent_id.in_(list(by_id)))  # type: ignore[union-attr]
            )
            next_frontier = []
            for child in result.scalars().all():
                if child.id in seen:
                    continue
                seen.add(child.id)
                new_path = child_path(by_id[child.parent_id].path, child.name)  # type: ignore[index]
                if child.path != new_path:
                    child.path = new_path
                    changed += 1
                next_frontier.append(child)
            frontier = next_frontier
        return changed
