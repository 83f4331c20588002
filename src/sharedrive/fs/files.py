"""FileService — upload, metadata edits, and download accounting."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, update
from sqlmodel import select

from .exceptions import InvalidStateError, ValidationError
from .utils import (
    escape_like,
    file_extension,
    guess_mime_type,
    normalize_tags,
    sanitize_filename,
    utcnow,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.models.files import DriveFileBase

    from .hierarchy import HierarchyService

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500
MAX_TAGS_LENGTH = 255


class FileService:
    """File record operations.  Bytes are stored by the caller's blob store."""

    def __init__(self, file_model: type[DriveFileBase], hierarchy: HierarchyService) -> None:
        self._file_model = file_model
        self._hierarchy = hierarchy

    async def create(
        self,
        session: AsyncSession,
        owner_id: str,
        original_name: str,
        size_bytes: int,
        object_ref: str,
        *,
        folder_id: str | None = None,
        mime_type: str | None = None,
        description: str = "",
        tags: str | list[str] | None = None,
        is_public: bool = False,
    ) -> DriveFileBase:
        """Record an uploaded file. Flushes but does not commit."""
        if size_bytes < 0:
            raise ValidationError("size_bytes cannot be negative")
        name = sanitize_filename(original_name)
        if folder_id is not None:
            folder = await self._hierarchy.resolve(session, folder_id, for_update=True)
            if folder.owner_id != owner_id:
                raise ValidationError("Destination folder belongs to another owner")
            if folder.trashed_at is not None:
                raise InvalidStateError(f"Destination folder is in trash: {folder_id}")

        file = self._file_model(
            name=name,
            original_name=original_name,
            extension=file_extension(name),
            mime_type=mime_type or guess_mime_type(name),
            size_bytes=size_bytes,
            object_ref=object_ref,
            owner_id=owner_id,
            folder_id=folder_id,
            is_public=is_public,
            description=self._check_description(description),
            tags=self._check_tags(tags),
        )
        session.add(file)
        await self._hierarchy.touch(session, folder_id)
        await session.flush()
        return file

    @staticmethod
    def _check_description(description: str | None) -> str:
        description = description or ""
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description too long (max {MAX_DESCRIPTION_LENGTH} characters)")
        return description

    @staticmethod
    def _check_tags(tags: str | list[str] | None) -> str:
        normalized = normalize_tags(tags)
        if len(normalized) > MAX_TAGS_LENGTH:
            raise ValidationError(f"Tags too long (max {MAX_TAGS_LENGTH} characters)")
        return normalized

    async def update_metadata(
        self,
        session: AsyncSession,
        file: DriveFileBase,
        *,
        description: str | None = None,
        tags: str | list[str] | None = None,
        is_public: bool | None = None,
        is_starred: bool | None = None,
    ) -> DriveFileBase:
        if description is not None:
            file.description = self._check_description(description)
        if tags is not None:
            file.tags = self._check_tags(tags)
        if is_public is not None:
            file.is_public = is_public
        if is_starred is not None:
            file.is_starred = is_starred
        file.updated_at = utcnow()
        await session.flush()
        return file

    async def increment_downloads(self, session: AsyncSession, file: DriveFileBase) -> int:
        """Atomically add one to ``download_count`` and return the new value."""
        model = self._file_model
        await session.execute(
            update(model)
            .where(model.id == file.id)
            .values(download_count=model.download_count + 1)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(file)
        return file.download_count

    async def list_starred(self, session: AsyncSession, owner_id: str, *, limit: int = 50) -> list[DriveFileBase]:
        model = self._file_model
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == owner_id,
                model.is_starred.is_(True),  # type: ignore[union-attr]
                model.trashed_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(model.updated_at.desc(), model.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def search(
        self,
        session: AsyncSession,
        owner_id: str,
        query: str,
        *,
        limit: int = 50,
    ) -> list[DriveFileBase]:
        """Case-insensitive match on name, original name, and tags across all folders."""
        model = self._file_model
        pattern = f"%{escape_like(query.lower())}%"
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == owner_id,
                model.trashed_at.is_(None),  # type: ignore[union-attr]
                or_(
                    func.lower(model.name).like(pattern, escape="\\"),
                    func.lower(model.original_name).like(pattern, escape="\\"),
                    func.lower(model.tags).like(pattern, escape="\\"),
                ),
            )
            .order_by(model.created_at.desc(), model.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())
