"""Tests for FileService — records, metadata, counters, and search."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from sharedrive.fs.exceptions import InvalidStateError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from sharedrive.fs.files import FileService
    from sharedrive.fs.hierarchy import HierarchyService


class TestCreate:
    async def test_derived_fields(self, files: FileService, async_session: AsyncSession):
        file = await files.create(async_session, "alice", "Q1 Report.PDF", 2048, "ab/abcdef", tags="a, b, a")
        assert file.name == "Q1 Report.PDF"
        assert file.original_name == "Q1 Report.PDF"
        assert file.extension == "pdf"
        assert file.mime_type == "application/pdf"
        assert file.tags == "a,b"
        assert file.download_count == 0

    async def test_unsafe_name_sanitized(self, files: FileService, async_session: AsyncSession):
        file = await files.create(async_session, "alice", "../../etc/pa:ss?wd", 1, "ab/abcdef")
        assert file.name == "pa_ss_wd"
        assert file.original_name == "../../etc/pa:ss?wd"

    async def test_negative_size(self, files: FileService, async_session: AsyncSession):
        with pytest.raises(ValidationError):
            await files.create(async_session, "alice", "x.txt", -1, "ab/abcdef")

    async def test_missing_folder(self, files: FileService, async_session: AsyncSession):
        with pytest.raises(NotFoundError):
            await files.create(async_session, "alice", "x.txt", 1, "ab/abcdef", folder_id="nope")

    async def test_other_owners_folder(
        self, files: FileService, hierarchy: HierarchyService, async_session: AsyncSession
    ):
        theirs = await hierarchy.create_folder(async_session, "bob", "Bob")
        with pytest.raises(ValidationError, match="another owner"):
            await files.create(async_session, "alice", "x.txt", 1, "ab/abcdef", folder_id=theirs.id)

    async def test_trashed_folder(self, files: FileService, hierarchy: HierarchyService, async_session: AsyncSession):
        folder = await hierarchy.create_folder(async_session, "alice", "Old")
        folder.trashed_at = datetime.now(UTC)
        await async_session.flush()
        with pytest.raises(InvalidStateError):
            await files.create(async_session, "alice", "x.txt", 1, "ab/abcdef", folder_id=folder.id)

    async def test_description_too_long(self, files: FileService, async_session: AsyncSession):
        with pytest.raises(ValidationError, match="Description"):
            await files.create(async_session, "alice", "x.txt", 1, "ab/abcdef", description="d" * 501)


class TestMetadata:
    async def test_update_flags(self, files: FileService, async_session: AsyncSession, make_file):
        file = await make_file("alice")
        await files.update_metadata(async_session, file, is_public=True, is_starred=True, tags=["x", "y"])
        assert file.is_public
        assert file.is_starred
        assert file.tags == "x,y"

    async def test_increment_downloads(self, files: FileService, async_session: AsyncSession, make_file):
        file = await make_file("alice")
        assert await files.increment_downloads(async_session, file) == 1
        assert await files.increment_downloads(async_session, file) == 2


class TestQueries:
    async def test_starred_excludes_trashed(self, files: FileService, async_session: AsyncSession, make_file):
        keep = await make_file("alice", "keep.txt")
        gone = await make_file("alice", "gone.txt")
        for f in (keep, gone):
            await files.update_metadata(async_session, f, is_starred=True)
        gone.trashed_at = datetime.now(UTC)
        await async_session.flush()
        assert [f.id for f in await files.list_starred(async_session, "alice")] == [keep.id]

    async def test_search_matches_tags(self, files: FileService, async_session: AsyncSession, make_file):
        tagged = await make_file("alice", "scan.png", tags="Invoice,2024")
        await make_file("alice", "holiday.png")
        await make_file("bob", "invoice.pdf")
        found = await files.search(async_session, "alice", "invoice")
        assert [f.id for f in found] == [tagged.id]
