"""StatsService — per-user rollups with incremental deltas and full recompute.

Counters are derived state.  Event handlers nudge them with single-statement
``UPDATE ... SET x = x + delta``; ``recompute`` rebuilds a user's row from
the file and share-link tables and is the drift-correction path.

``storage_bytes`` covers every stored file, trashed or not, since trashed
bytes stay in the blob store until purge.  ``file_count`` counts active
files only; trashed files are in ``trashed_file_count``.  ``download_count``
sums the per-file counters, so a purge takes its files' downloads with it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import func, update
from sqlmodel import select

from sharedrive.events import EventType

from .types import SystemStats, UserStatsInfo
from .utils import is_expired, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.events import DriveEvent
    from sharedrive.models.collaborators import CollaboratorBase
    from sharedrive.models.files import DriveFileBase
    from sharedrive.models.links import ShareLinkBase
    from sharedrive.models.stats import UserStatsBase
    from sharedrive.models.users import UserBase

logger = logging.getLogger(__name__)

_COUNTERS = ("file_count", "trashed_file_count", "storage_bytes", "shared_file_count", "download_count")

# Events after which the set of shared files may have changed.
_SHARE_SENSITIVE = {
    EventType.FILE_UPLOADED,
    EventType.FILE_DOWNLOADED,
    EventType.FILE_UPDATED,
    EventType.RESOURCE_TRASHED,
    EventType.RESOURCE_RESTORED,
    EventType.RESOURCE_PURGED,
    EventType.SHARE_CHANGED,
}


def stats_to_info(row: UserStatsBase) -> UserStatsInfo:
    return UserStatsInfo(
        user_id=row.user_id,
        file_count=row.file_count,
        trashed_file_count=row.trashed_file_count,
        storage_bytes=row.storage_bytes,
        shared_file_count=row.shared_file_count,
        download_count=row.download_count,
        recomputed_at=row.recomputed_at,
    )


class StatsService:
    """Quota and dashboard aggregator."""

    def __init__(
        self,
        stats_model: type[UserStatsBase],
        file_model: type[DriveFileBase],
        link_model: type[ShareLinkBase],
        user_model: type[UserBase],
        collaborator_model: type[CollaboratorBase],
    ) -> None:
        self._stats_model = stats_model
        self._file_model = file_model
        self._link_model = link_model
        self._user_model = user_model
        self._collaborator_model = collaborator_model

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def _row(self, session: AsyncSession, user_id: str) -> UserStatsBase:
        row = await session.get(self._stats_model, user_id)
        if row is None:
            row = self._stats_model(user_id=user_id)
            session.add(row)
            await session.flush()
        return row

    async def get(self, session: AsyncSession, user_id: str) -> UserStatsInfo:
        """Return the user's rollup, computing it on first access."""
        row = await session.get(self._stats_model, user_id, populate_existing=True)
        if row is None:
            await self.recompute(session, user_id)
            row = await session.get(self._stats_model, user_id)
        return stats_to_info(row)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    async def apply_delta(self, session: AsyncSession, user_id: str, **deltas: int) -> None:
        """Add each of *deltas* (counter name -> amount) to the user's row atomically."""
        unknown = set(deltas) - set(_COUNTERS)
        if unknown:
            raise ValueError(f"Unknown stats counters: {sorted(unknown)}")
        deltas = {k: v for k, v in deltas.items() if v}
        await self._row(session, user_id)
        if not deltas:
            return
        model = self._stats_model
        values = {name: getattr(model, name) + amount for name, amount in deltas.items()}
        values["updated_at"] = utcnow()
        await session.execute(
            update(model)
            .where(model.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.flush()

    async def _shared_file_count(self, session: AsyncSession, user_id: str) -> int:
        """Active files that are public or targeted by a usable share-link."""
        dm = self._file_model
        lm = self._link_model
        public = await session.execute(
            select(dm.id).where(
                dm.owner_id == user_id,
                dm.trashed_at.is_(None),  # type: ignore[union-attr]
                dm.is_public.is_(True),  # type: ignore[union-attr]
            )
        )
        shared = set(public.scalars().all())
        now = utcnow()
        links = await session.execute(
            select(lm.file_id, lm.expires_at)
            .join(dm, dm.id == lm.file_id)
            .where(
                lm.owner_id == user_id,
                lm.is_active.is_(True),  # type: ignore[union-attr]
                dm.trashed_at.is_(None),  # type: ignore[union-attr]
            )
        )
        shared.update(fid for fid, expires_at in links.all() if not is_expired(expires_at, now))
        return len(shared)

    async def refresh_shared(self, session: AsyncSession, user_id: str) -> int:
        """Recompute only ``shared_file_count``; it has no cheap delta form."""
        count = await self._shared_file_count(session, user_id)
        row = await self._row(session, user_id)
        await session.refresh(row)
        row.shared_file_count = count
        row.updated_at = utcnow()
        await session.flush()
        return count

    async def handle_event(self, session: AsyncSession, event: DriveEvent) -> None:
        """Translate a committed drive event into counter deltas."""
        owner = event.owner_id
        match event.event_type:
            case EventType.FILE_UPLOADED:
                await self.apply_delta(session, owner, file_count=1, storage_bytes=event.size_bytes)
            case EventType.FILE_DOWNLOADED:
                await self.apply_delta(session, owner, download_count=1)
            case EventType.RESOURCE_TRASHED:
                await self.apply_delta(
                    session, owner, file_count=-event.files, trashed_file_count=event.files
                )
            case EventType.RESOURCE_RESTORED:
                await self.apply_delta(
                    session, owner, file_count=event.files, trashed_file_count=-event.files
                )
            case EventType.RESOURCE_PURGED:
                await self.apply_delta(
                    session,
                    owner,
                    file_count=-event.active_files,
                    trashed_file_count=-(event.files - event.active_files),
                    storage_bytes=-event.size_bytes,
                    download_count=-event.downloads,
                )
        if event.event_type in _SHARE_SENSITIVE:
            await self.refresh_shared(session, owner)

    # ------------------------------------------------------------------
    # Full recompute
    # ------------------------------------------------------------------

    async def compute(self, session: AsyncSession, user_id: str) -> dict[str, int]:
        """Derive every counter for *user_id* from source tables."""
        dm = self._file_model
        result = await session.execute(
            select(
                func.count(dm.id).filter(dm.trashed_at.is_(None)),  # type: ignore[union-attr]
                func.count(dm.id).filter(dm.trashed_at.is_not(None)),  # type: ignore[union-attr]
                func.coalesce(func.sum(dm.size_bytes), 0),
                func.coalesce(func.sum(dm.download_count), 0),
            ).where(dm.owner_id == user_id)
        )
        active, trashed, size, downloads = result.one()
        return {
            "file_count": int(active),
            "trashed_file_count": int(trashed),
            "storage_bytes": int(size),
            "shared_file_count": await self._shared_file_count(session, user_id),
            "download_count": int(downloads),
        }

    async def recompute(self, session: AsyncSession, user_id: str) -> bool:
        """Overwrite the user's row from source tables.  Return True if it had drifted."""
        values = await self.compute(session, user_id)
        row = await self._row(session, user_id)
        await session.refresh(row)
        drifted = any(getattr(row, name) != value for name, value in values.items())
        if drifted:
            logger.info(
                "Stats drift for %s: %s",
                user_id,
                {n: (getattr(row, n), v) for n, v in values.items() if getattr(row, n) != v},
            )
        for name, value in values.items():
            setattr(row, name, value)
        row.recomputed_at = utcnow()
        row.updated_at = row.recomputed_at
        await session.flush()
        return drifted

    async def user_ids(self, session: AsyncSession) -> list[str]:
        """Every user that owns files or already has a stats row."""
        um = self._user_model
        ids = set((await session.execute(select(um.id))).scalars().all())
        ids.update((await session.execute(select(self._file_model.owner_id).distinct())).scalars().all())
        ids.update((await session.execute(select(self._stats_model.user_id))).scalars().all())
        return sorted(ids)

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------

    async def system_stats(self, session: AsyncSession) -> SystemStats:
        """Admin-wide totals, computed from source tables."""
        um = self._user_model
        dm = self._file_model
        cm = self._collaborator_model
        lm = self._link_model
        now = utcnow()

        users = (
            await session.execute(
                select(func.count(um.id), func.count(um.id).filter(um.is_active.is_(True)))  # type: ignore[union-attr]
            )
        ).one()
        files = (
            await session.execute(
                select(
                    func.count(dm.id),
                    func.coalesce(func.sum(dm.size_bytes), 0),
                    func.count(dm.id).filter(dm.is_public.is_(True)),  # type: ignore[union-attr]
                    func.coalesce(func.sum(dm.download_count), 0),
                ).where(dm.trashed_at.is_(None))  # type: ignore[union-attr]
            )
        ).one()
        grant_expiries = (await session.execute(select(cm.expires_at))).scalars().all()
        expired_grants = sum(1 for e in grant_expiries if is_expired(e, now))
        link_expiries = (
            await session.execute(select(lm.expires_at).where(lm.is_active.is_(True)))  # type: ignore[union-attr]
        ).scalars().all()

        return SystemStats(
            total_users=int(users[0]),
            active_users=int(users[1]),
            total_files=int(files[0]),
            total_bytes=int(files[1]),
            public_files=int(files[2]),
            private_files=int(files[0]) - int(files[2]),
            total_downloads=int(files[3]),
            active_grants=len(grant_expiries) - expired_grants,
            expired_grants=expired_grants,
            active_share_links=sum(1 for e in link_expiries if not is_expired(e, now)),
        )
