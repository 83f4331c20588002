"""Shared fixtures for sharedrive tests."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from sharedrive._drive_async import DriveAsync
from sharedrive.config import DriveSettings
from sharedrive.fs.access import AccessResolver
from sharedrive.fs.activity import ActivityService
from sharedrive.fs.collaborators import CollaboratorService
from sharedrive.fs.files import FileService
from sharedrive.fs.hierarchy import HierarchyService
from sharedrive.fs.sharing import ShareLinkService
from sharedrive.fs.stats import StatsService
from sharedrive.fs.trash import TrashService
from sharedrive.models import Collaborator, DriveFile, FileAccess, Folder, ShareLink, User, UserStats

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Async SQLModel session over the in-memory engine."""
    factory = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def hierarchy() -> HierarchyService:
    return HierarchyService(Folder, DriveFile, User)


@pytest.fixture
def access(hierarchy: HierarchyService) -> AccessResolver:
    return AccessResolver(hierarchy, Collaborator, User)


@pytest.fixture
def files(hierarchy: HierarchyService) -> FileService:
    return FileService(DriveFile, hierarchy)


@pytest.fixture
def collaborators() -> CollaboratorService:
    return CollaboratorService(Collaborator, User)


@pytest.fixture
def links(hierarchy: HierarchyService) -> ShareLinkService:
    return ShareLinkService(ShareLink, hierarchy)


@pytest.fixture
def trash(
    hierarchy: HierarchyService, collaborators: CollaboratorService, links: ShareLinkService
) -> TrashService:
    return TrashService(hierarchy, collaborators, links, Folder, DriveFile)


@pytest.fixture
def stats() -> StatsService:
    return StatsService(UserStats, DriveFile, ShareLink, User, Collaborator)


@pytest.fixture
def activity() -> ActivityService:
    return ActivityService(FileAccess, DriveFile)


@pytest.fixture
async def users(async_session: AsyncSession) -> dict[str, User]:
    """Three active users: alice, bob, carol."""
    created = {name: User(id=name, email=f"{name}@example.com") for name in ("alice", "bob", "carol")}
    async_session.add_all(created.values())
    await async_session.flush()
    return created


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> DriveSettings:
    return DriveSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'drive.db'}",
        blob_root=str(tmp_path / "blobs"),
    )


@pytest.fixture
async def drive(settings: DriveSettings) -> AsyncIterator[DriveAsync]:
    """DriveAsync over a file-backed SQLite database and a local blob store."""
    d = DriveAsync(settings=settings)
    await d.create_tables()
    yield d
    await d.close()


@pytest.fixture
def make_file(async_session: AsyncSession, files: FileService):
    """Factory recording a file row without touching a blob store."""

    async def _make(owner_id: str, name: str = "doc.txt", folder_id: str | None = None, size: int = 10, **kwargs):
        key = uuid.uuid4().hex
        return await files.create(
            async_session, owner_id, name, size, f"{key[:2]}/{key}", folder_id=folder_id, **kwargs
        )

    return _make
