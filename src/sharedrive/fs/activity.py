"""ActivityService — per-user file-access log behind "recent files".

Entries are written by an event-bus handler after the operation that caused
them has committed.  Anonymous share-link traffic has no user to attribute
and is not logged here; it is counted on the link itself.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func
from sqlmodel import select

from sharedrive.events import EventType

from .types import FileAccessInfo, ResourceType
from .utils import as_utc, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.events import DriveEvent
    from sharedrive.models.accesses import FileAccessBase
    from sharedrive.models.files import DriveFileBase

logger = logging.getLogger(__name__)

VIEW = "view"
DOWNLOAD = "download"
EDIT = "edit"

LOGGED_EVENTS = {
    EventType.FILE_VIEWED: VIEW,
    EventType.FILE_DOWNLOADED: DOWNLOAD,
    EventType.FILE_UPDATED: EDIT,
}


def access_to_info(entry: FileAccessBase) -> FileAccessInfo:
    return FileAccessInfo(
        id=entry.id,
        file_id=entry.file_id,
        user_id=entry.user_id,
        action=entry.action,
        accessed_at=as_utc(entry.created_at),
    )


class ActivityService:
    """Records who touched which file, and when."""

    def __init__(self, access_model: type[FileAccessBase], file_model: type[DriveFileBase]) -> None:
        self._access_model = access_model
        self._file_model = file_model

    async def record(self, session: AsyncSession, user_id: str, file_id: str, action: str) -> FileAccessBase:
        entry = self._access_model(user_id=user_id, file_id=file_id, action=action)
        session.add(entry)
        await session.flush()
        return entry

    async def handle_event(self, session: AsyncSession, event: DriveEvent) -> None:
        action = LOGGED_EVENTS.get(event.event_type)
        if action is None or event.actor_id is None or event.resource_id is None:
            return
        if event.resource_type != ResourceType.FILE.value:
            return
        await self.record(session, event.actor_id, event.resource_id, action)

    async def recent_files(
        self, session: AsyncSession, user_id: str, *, limit: int = 20
    ) -> list[tuple[DriveFileBase, datetime]]:
        """Active files *user_id* touched, latest access first, one row per file.

        Files the user does not own are included; callers re-check access.
        """
        am = self._access_model
        dm = self._file_model
        latest = (
            select(am.file_id, func.max(am.created_at).label("accessed_at"))
            .where(am.user_id == user_id)
            .group_by(am.file_id)
            .subquery()
        )
        result = await session.execute(
            select(dm, latest.c.accessed_at)
            .join(latest, latest.c.file_id == dm.id)
            .where(dm.trashed_at.is_(None))  # type: ignore[union-attr]
            .order_by(latest.c.accessed_at.desc(), dm.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return [(file, as_utc(accessed_at)) for file, accessed_at in result.all()]  # type: ignore[misc]

    async def history(
        self, session: AsyncSession, file_id: str, *, page: int = 1, limit: int = 50
    ) -> tuple[list[FileAccessBase], int]:
        """Access entries for one file, newest first."""
        am = self._access_model
        total = (
            await session.execute(select(func.count()).select_from(am).where(am.file_id == file_id))
        ).scalar_one()
        result = await session.execute(
            select(am)
            .where(am.file_id == file_id)
            .order_by(am.created_at.desc(), am.id.asc())  # type: ignore[union-attr]
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def cleanup(self, session: AsyncSession, older_than_days: int) -> int:
        """Delete entries older than *older_than_days*.  Returns the number removed."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        am = self._access_model
        result = await session.execute(delete(am).where(am.created_at < cutoff))
        removed = result.rowcount or 0
        if removed:
            logger.info("Removed %d file-access entries older than %d days", removed, older_than_days)
        return removed
