"""Tests for TrashService — cascades, batches, restore, and purge."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import pytest
from sqlmodel import select

from sharedrive.fs.exceptions import ConflictError, InvalidStateError
from sharedrive.fs.types import ResourceRef
from sharedrive.models import Collaborator, DriveFile, Folder, ShareLink

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.fs.collaborators import CollaboratorService
    from sharedrive.fs.files import FileService
    from sharedrive.fs.hierarchy import HierarchyService
    from sharedrive.fs.sharing import ShareLinkService
    from sharedrive.fs.trash import TrashService


@pytest.fixture
async def tree(users, hierarchy: HierarchyService, async_session: AsyncSession, make_file):
    """/Reports/{q1.pdf, 2024/{a.txt, b.txt}} for alice."""
    reports = await hierarchy.create_folder(async_session, "alice", "Reports")
    year = await hierarchy.create_folder(async_session, "alice", "2024", reports.id)
    q1 = await make_file("alice", "q1.pdf", reports.id, size=100)
    a = await make_file("alice", "a.txt", year.id, size=10)
    b = await make_file("alice", "b.txt", year.id, size=5)
    return {"reports": reports, "year": year, "q1": q1, "a": a, "b": b}


async def _count(session: AsyncSession, model) -> int:
    return len((await session.execute(select(model))).scalars().all())


class TestTrash:
    async def test_cascade_shares_timestamp_and_batch(
        self, trash: TrashService, async_session: AsyncSession, tree
    ):
        result = await trash.trash(async_session, tree["reports"])
        assert result.total_affected == 5
        rows = [tree[k] for k in ("reports", "year", "q1", "a", "b")]
        assert {row.trashed_at for row in rows} == {rows[0].trashed_at}
        assert {row.trash_batch_id for row in rows} == {result.batch_id}

    async def test_already_trashed_is_noop(self, trash: TrashService, async_session: AsyncSession, tree):
        first = await trash.trash(async_session, tree["q1"])
        second = await trash.trash(async_session, tree["q1"])
        assert second.already_in_state
        assert second.batch_id == first.batch_id

    async def test_previously_trashed_child_keeps_its_batch(
        self, trash: TrashService, async_session: AsyncSession, tree
    ):
        own = await trash.trash(async_session, tree["a"])
        cascade = await trash.trash(async_session, tree["reports"])
        assert tree["a"].trash_batch_id == own.batch_id
        assert tree["a"].id not in cascade.affected_files

    async def test_trashed_file_hidden_from_listing(
        self, trash: TrashService, hierarchy: HierarchyService, async_session: AsyncSession, tree
    ):
        await trash.trash(async_session, tree["q1"])
        listing = await hierarchy.list_children(async_session, "alice", tree["reports"].id)
        assert [f.name for f in listing.files] == []


class TestRestore:
    async def test_without_cascade_children_stay_trashed(
        self, trash: TrashService, async_session: AsyncSession, tree
    ):
        await trash.trash(async_session, tree["reports"])
        result = await trash.restore(async_session, tree["reports"])
        assert result.affected_folders == [tree["reports"].id]
        assert tree["reports"].trashed_at is None
        assert tree["q1"].trashed_at is not None
        assert tree["year"].trashed_at is not None

    async def test_cascade_round_trip(self, trash: TrashService, async_session: AsyncSession, tree):
        await trash.trash(async_session, tree["reports"])
        result = await trash.restore(async_session, tree["reports"], cascade=True)
        assert result.total_affected == 5
        for row in tree.values():
            assert row.trashed_at is None
            assert row.trash_batch_id is None

    async def test_cascade_skips_other_batches(self, trash: TrashService, async_session: AsyncSession, tree):
        await trash.trash(async_session, tree["a"])
        await trash.trash(async_session, tree["reports"])
        await trash.restore(async_session, tree["reports"], cascade=True)
        assert tree["b"].trashed_at is None
        assert tree["a"].trashed_at is not None

    async def test_restore_active_is_noop(self, trash: TrashService, async_session: AsyncSession, tree):
        result = await trash.restore(async_session, tree["q1"])
        assert result.already_in_state

    async def test_file_relocated_when_parent_trashed(
        self, trash: TrashService, async_session: AsyncSession, tree
    ):
        await trash.trash(async_session, tree["reports"])
        result = await trash.restore(async_session, tree["q1"])
        assert result.relocated_to_root
        assert tree["q1"].folder_id is None
        assert tree["q1"].trashed_at is None

    async def test_folder_relocated_rebuilds_path(
        self, trash: TrashService, async_session: AsyncSession, tree
    ):
        await trash.trash(async_session, tree["reports"])
        result = await trash.restore(async_session, tree["year"])
        assert result.relocated_to_root
        assert tree["year"].parent_id is None
        assert tree["year"].path == "/2024"

    async def test_restore_name_conflict(
        self, trash: TrashService, hierarchy: HierarchyService, async_session: AsyncSession, tree
    ):
        await trash.trash(async_session, tree["reports"])
        await hierarchy.create_folder(async_session, "alice", "Reports")
        with pytest.raises(ConflictError):
            await trash.restore(async_session, tree["reports"])
        assert tree["reports"].trashed_at is not None


class TestPurge:
    async def test_requires_trashed(self, trash: TrashService, async_session: AsyncSession, tree):
        with pytest.raises(InvalidStateError):
            await trash.purge(async_session, tree["q1"])

    async def test_folder_purge_removes_subtree(
        self, trash: TrashService, async_session: AsyncSession, tree
    ):
        await trash.trash(async_session, tree["reports"])
        result = await trash.purge(async_session, tree["reports"])
        assert result.purged_bytes == 115
        assert len(result.object_refs) == 3
        assert set(result.purged_folders) == {tree["reports"].id, tree["year"].id}
        assert result.purged_folders[-1] == tree["reports"].id
        assert await _count(async_session, Folder) == 0
        assert await _count(async_session, DriveFile) == 0

    async def test_purge_reports_downloads(
        self, trash: TrashService, files: FileService, async_session: AsyncSession, tree
    ):
        await files.increment_downloads(async_session, tree["q1"])
        await files.increment_downloads(async_session, tree["a"])
        await files.increment_downloads(async_session, tree["a"])
        await trash.trash(async_session, tree["reports"])
        result = await trash.purge(async_session, tree["reports"])
        assert result.downloads == 3

    async def test_purge_drops_grants_and_links(
        self,
        trash: TrashService,
        collaborators: CollaboratorService,
        links: ShareLinkService,
        async_session: AsyncSession,
        tree,
    ):
        await collaborators.add(async_session, ResourceRef.folder(tree["year"].id), "alice", "bob", "viewer", "alice")
        await links.create(async_session, "alice", ResourceRef.file(tree["a"].id))
        await trash.trash(async_session, tree["reports"])
        await trash.purge(async_session, tree["reports"])
        assert await _count(async_session, Collaborator) == 0
        assert await _count(async_session, ShareLink) == 0

    async def test_empty_trash_purges_each_row_once(
        self, trash: TrashService, async_session: AsyncSession, tree, make_file
    ):
        loose = await make_file("alice", "loose.txt", size=7)
        await trash.trash(async_session, tree["a"])
        await trash.trash(async_session, tree["reports"])
        await trash.trash(async_session, loose)

        result = await trash.empty_trash(async_session, "alice")
        assert sorted(result.purged_files) == sorted([tree[k].id for k in ("q1", "a", "b")] + [loose.id])
        assert result.purged_bytes == 122
        assert result.active_files_purged == 0

    async def test_empty_trash_leaves_other_owners(
        self, trash: TrashService, async_session: AsyncSession, users, make_file
    ):
        mine = await make_file("alice")
        theirs = await make_file("bob")
        await trash.trash(async_session, mine)
        await trash.trash(async_session, theirs)
        await trash.empty_trash(async_session, "alice")
        remaining = (await async_session.execute(select(DriveFile))).scalars().all()
        assert [f.id for f in remaining] == [theirs.id]


class TestListingAndRetention:
    async def test_list_trash_top_level_only(self, trash: TrashService, async_session: AsyncSession, tree):
        await trash.trash(async_session, tree["reports"])
        listing = await trash.list_trash(async_session, "alice")
        assert [f.id for f in listing.folders] == [tree["reports"].id]
        assert listing.files == []
        assert listing.total == 1

    async def test_list_trash_pages_folders_then_files(
        self, trash: TrashService, hierarchy: HierarchyService, async_session: AsyncSession, users, make_file
    ):
        for name in ("F1", "F2"):
            await trash.trash(async_session, await hierarchy.create_folder(async_session, "alice", name))
        for name in ("x.txt", "y.txt"):
            await trash.trash(async_session, await make_file("alice", name))

        first = await trash.list_trash(async_session, "alice", page=1, limit=3)
        second = await trash.list_trash(async_session, "alice", page=2, limit=3)
        assert len(first.folders) == 2
        assert len(first.files) == 1
        assert second.folders == []
        assert len(second.files) == 1
        assert {f.id for f in first.files} | {f.id for f in second.files} == {
            f.id for f in (await trash.top_level_trashed(async_session, "alice"))[1]
        }

    async def test_purge_expired_honours_retention(
        self, trash: TrashService, async_session: AsyncSession, users, make_file
    ):
        old = await make_file("alice", "old.txt")
        fresh = await make_file("alice", "fresh.txt")
        bobs = await make_file("bob", "bob.txt")
        for row in (old, fresh, bobs):
            await trash.trash(async_session, row)
        old.trashed_at = old.trashed_at - timedelta(days=31)
        bobs.trashed_at = bobs.trashed_at - timedelta(days=45)
        await async_session.flush()

        results = await trash.purge_expired(async_session, 30)
        by_owner = {r.owner_id: r for r in results}
        assert by_owner["alice"].purged_files == [old.id]
        assert by_owner["bob"].purged_files == [bobs.id]
        assert fresh.trashed_at is not None
