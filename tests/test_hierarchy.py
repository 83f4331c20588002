"""Tests for HierarchyService — tree, paths, moves, and listings."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import delete, update

from sharedrive.fs.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from sharedrive.fs.types import ResourceRef
from sharedrive.fs.utils import utcnow
from sharedrive.models import Folder, User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.fs.hierarchy import HierarchyService


async def _tree(hierarchy: HierarchyService, session: AsyncSession) -> dict[str, Folder]:
    """/A, /A/B, /A/B/C, /D for alice."""
    a = await hierarchy.create_folder(session, "alice", "A")
    b = await hierarchy.create_folder(session, "alice", "B", a.id)
    c = await hierarchy.create_folder(session, "alice", "C", b.id)
    d = await hierarchy.create_folder(session, "alice", "D")
    return {"A": a, "B": b, "C": c, "D": d}


# ---------------------------------------------------------------------------
# create / resolve
# ---------------------------------------------------------------------------


class TestCreateFolder:
    async def test_root_folder(self, hierarchy: HierarchyService, async_session: AsyncSession):
        folder = await hierarchy.create_folder(async_session, "alice", "Reports", color="#FF0000")
        assert folder.path == "/Reports"
        assert folder.parent_id is None
        assert folder.color == "#ff0000"
        assert folder.id

    async def test_nested_path(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        assert tree["C"].path == "/A/B/C"

    async def test_name_is_stripped(self, hierarchy: HierarchyService, async_session: AsyncSession):
        folder = await hierarchy.create_folder(async_session, "alice", "  Notes  ")
        assert folder.name == "Notes"

    @pytest.mark.parametrize("name", ["", "   ", "a/b", "..", "CON"])
    async def test_invalid_names(
        self, hierarchy: HierarchyService, async_session: AsyncSession, name: str
    ):
        with pytest.raises(ValidationError):
            await hierarchy.create_folder(async_session, "alice", name)

    async def test_invalid_color(self, hierarchy: HierarchyService, async_session: AsyncSession):
        with pytest.raises(ValidationError, match="color"):
            await hierarchy.create_folder(async_session, "alice", "X", color="red")

    async def test_duplicate_sibling_name(self, hierarchy: HierarchyService, async_session: AsyncSession):
        await hierarchy.create_folder(async_session, "alice", "Reports")
        with pytest.raises(ConflictError):
            await hierarchy.create_folder(async_session, "alice", "Reports")

    async def test_same_name_different_owner(self, hierarchy: HierarchyService, async_session: AsyncSession):
        await hierarchy.create_folder(async_session, "alice", "Reports")
        folder = await hierarchy.create_folder(async_session, "bob", "Reports")
        assert folder.owner_id == "bob"

    async def test_missing_parent(self, hierarchy: HierarchyService, async_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await hierarchy.create_folder(async_session, "alice", "X", "nope")

    async def test_trashed_parent(self, hierarchy: HierarchyService, async_session: AsyncSession):
        parent = await hierarchy.create_folder(async_session, "alice", "P")
        parent.trashed_at = parent.created_at
        await async_session.flush()
        with pytest.raises(InvalidStateError):
            await hierarchy.create_folder(async_session, "alice", "X", parent.id)

    async def test_resolve_missing(self, hierarchy: HierarchyService, async_session: AsyncSession):
        with pytest.raises(NotFoundError, match="Folder not found"):
            await hierarchy.resolve(async_session, "missing")

    async def test_resolve_missing_file(self, hierarchy: HierarchyService, async_session: AsyncSession):
        with pytest.raises(NotFoundError, match="File not found"):
            await hierarchy.resolve_resource(async_session, ResourceRef.file("missing"))


# ---------------------------------------------------------------------------
# ancestors / breadcrumbs / descendants
# ---------------------------------------------------------------------------


class TestTreeQueries:
    async def test_ancestors_closest_first(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        chain = await hierarchy.ancestors(async_session, tree["C"].id)
        assert [f.name for f in chain] == ["C", "B", "A"]

    async def test_ancestor_chain_for_file(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        tree = await _tree(hierarchy, async_session)
        file = await make_file("alice", folder_id=tree["B"].id)
        _, chain = await hierarchy.ancestor_chain(async_session, ResourceRef.file(file.id))
        assert chain == [
            ResourceRef.file(file.id),
            ResourceRef.folder(tree["B"].id),
            ResourceRef.folder(tree["A"].id),
        ]

    async def test_breadcrumbs_root_to_folder(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        crumbs = await hierarchy.breadcrumbs(async_session, tree["C"].id)
        assert [c.name for c in crumbs] == ["A", "B", "C"]
        assert crumbs[-1].path == "/A/B/C"

    async def test_descendants(self, hierarchy: HierarchyService, async_session: AsyncSession, make_file):
        tree = await _tree(hierarchy, async_session)
        f1 = await make_file("alice", "one.txt", tree["A"].id)
        f2 = await make_file("alice", "two.txt", tree["C"].id)
        folders, files = await hierarchy.descendants(async_session, tree["A"].id)
        assert [f.name for f in folders] == ["B", "C"]
        assert {f.id for f in files} == {f1.id, f2.id}

    async def test_is_descendant(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        assert await hierarchy.is_descendant(async_session, tree["C"].id, tree["A"].id)
        assert not await hierarchy.is_descendant(async_session, tree["A"].id, tree["C"].id)

    async def test_child_counts_ignore_trashed(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        tree = await _tree(hierarchy, async_session)
        await make_file("alice", "a.txt", tree["A"].id)
        gone = await make_file("alice", "b.txt", tree["A"].id)
        gone.trashed_at = gone.created_at
        await async_session.flush()
        info = await hierarchy.folder_info(async_session, tree["A"])
        assert info.file_count == 1
        assert info.subfolder_count == 1


# ---------------------------------------------------------------------------
# move / rename
# ---------------------------------------------------------------------------


class TestTreeLock:
    async def test_bumps_version(self, hierarchy: HierarchyService, async_session: AsyncSession, users):
        await hierarchy.lock_tree(async_session, "alice")
        await hierarchy.lock_tree(async_session, "alice")
        alice = await async_session.get(User, "alice", populate_existing=True)
        assert alice.tree_version == 2
        bob = await async_session.get(User, "bob", populate_existing=True)
        assert bob.tree_version == 0

    async def test_reloads_rows(self, hierarchy: HierarchyService, async_session: AsyncSession, users):
        tree = await _tree(hierarchy, async_session)
        await async_session.execute(
            update(Folder)
            .where(Folder.id == tree["C"].id)
            .values(parent_id=tree["D"].id)
            .execution_options(synchronize_session=False)
        )
        assert tree["C"].parent_id == tree["B"].id
        await hierarchy.lock_tree(async_session, "alice", tree["C"])
        assert tree["C"].parent_id == tree["D"].id

    async def test_deleted_row(self, hierarchy: HierarchyService, async_session: AsyncSession, users):
        tree = await _tree(hierarchy, async_session)
        await async_session.execute(
            delete(Folder).where(Folder.id == tree["D"].id).execution_options(synchronize_session=False)
        )
        with pytest.raises(NotFoundError):
            await hierarchy.lock_tree(async_session, "alice", tree["D"])


class TestMoveFolder:
    async def test_move_rebuilds_paths(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        await hierarchy.move_folder(async_session, tree["B"], tree["D"].id)
        assert tree["B"].path == "/D/B"
        refreshed = await hierarchy.resolve(async_session, tree["C"].id)
        assert refreshed.path == "/D/B/C"

    async def test_move_to_root(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        await hierarchy.move_folder(async_session, tree["C"], None)
        assert tree["C"].parent_id is None
        assert tree["C"].path == "/C"

    async def test_move_into_itself(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        with pytest.raises(ConflictError, match="itself"):
            await hierarchy.move_folder(async_session, tree["A"], tree["A"].id)

    @pytest.mark.parametrize("target", ["B", "C"])
    async def test_move_into_descendant(
        self, hierarchy: HierarchyService, async_session: AsyncSession, target: str
    ):
        tree = await _tree(hierarchy, async_session)
        with pytest.raises(ConflictError, match="descendant"):
            await hierarchy.move_folder(async_session, tree["A"], tree[target].id)
        assert tree["A"].parent_id is None

    async def test_move_trashed_folder(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        tree["B"].trashed_at = utcnow()
        with pytest.raises(InvalidStateError):
            await hierarchy.move_folder(async_session, tree["B"], tree["D"].id)

    async def test_move_name_collision(self, hierarchy: HierarchyService, async_session: AsyncSession):
        tree = await _tree(hierarchy, async_session)
        await hierarchy.create_folder(async_session, "alice", "C", tree["D"].id)
        with pytest.raises(ConflictError):
            await hierarchy.move_folder(async_session, tree["C"], tree["D"].id)

    async def test_rename_rebuilds_descendant_paths(
        self, hierarchy: HierarchyService, async_session: AsyncSession
    ):
        tree = await _tree(hierarchy, async_session)
        await hierarchy.update_folder(async_session, tree["A"], name="Archive")
        refreshed = await hierarchy.resolve(async_session, tree["C"].id)
        assert refreshed.path == "/Archive/B/C"

    async def test_move_file(self, hierarchy: HierarchyService, async_session: AsyncSession, make_file):
        tree = await _tree(hierarchy, async_session)
        file = await make_file("alice", folder_id=tree["A"].id)
        await hierarchy.move_file(async_session, file, tree["D"].id)
        assert file.folder_id == tree["D"].id

    async def test_move_file_into_other_owners_folder(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        theirs = await hierarchy.create_folder(async_session, "bob", "Bob")
        file = await make_file("alice")
        with pytest.raises(ConflictError, match="another owner"):
            await hierarchy.move_file(async_session, file, theirs.id)


# ---------------------------------------------------------------------------
# list_children
# ---------------------------------------------------------------------------


class TestListChildren:
    async def test_folders_before_files(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        tree = await _tree(hierarchy, async_session)
        await make_file("alice", "x.txt", tree["A"].id)
        result = await hierarchy.list_children(async_session, "alice", tree["A"].id)
        assert [f.name for f in result.folders] == ["B"]
        assert [f.name for f in result.files] == ["x.txt"]
        assert result.total == 2

    async def test_root_is_per_owner(self, hierarchy: HierarchyService, async_session: AsyncSession):
        await _tree(hierarchy, async_session)
        await hierarchy.create_folder(async_session, "bob", "Bob")
        result = await hierarchy.list_children(async_session, "alice")
        assert {f.name for f in result.folders} == {"A", "D"}

    async def test_pagination_has_no_gaps_or_duplicates(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        parent = await hierarchy.create_folder(async_session, "alice", "P")
        for i in range(3):
            await hierarchy.create_folder(async_session, "alice", f"sub{i}", parent.id)
        for i in range(4):
            await make_file("alice", f"file{i}.txt", parent.id)

        seen: list[str] = []
        for page in (1, 2, 3):
            result = await hierarchy.list_children(async_session, "alice", parent.id, page=page, limit=3)
            seen.extend(f.id for f in result.folders)
            seen.extend(f.id for f in result.files)
            assert result.total == 7
            assert result.total_pages == 3
        assert len(seen) == 7
        assert len(set(seen)) == 7

    async def test_search_case_insensitive(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        await make_file("alice", "Quarterly.PDF")
        await make_file("alice", "notes.txt")
        result = await hierarchy.list_children(async_session, "alice", search="quarter")
        assert [f.name for f in result.files] == ["Quarterly.PDF"]

    async def test_search_escapes_wildcards(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        await make_file("alice", "100%.txt")
        await make_file("alice", "1000.txt")
        result = await hierarchy.list_children(async_session, "alice", search="0%")
        assert [f.name for f in result.files] == ["100%.txt"]

    async def test_trashed_children_hidden(
        self, hierarchy: HierarchyService, async_session: AsyncSession, make_file
    ):
        file = await make_file("alice")
        file.trashed_at = file.created_at
        await async_session.flush()
        result = await hierarchy.list_children(async_session, "alice")
        assert result.files == []
