"""Tests for ShareLinkService — creation, gated resolution, and atomic download caps."""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from sharedrive.fs.exceptions import (
    ExhaustedError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from sharedrive.fs.files import FileService
from sharedrive.fs.hierarchy import HierarchyService
from sharedrive.fs.permissions import Action
from sharedrive.fs.sharing import ShareLinkService
from sharedrive.fs.types import ResourceRef
from sharedrive.models import DriveFile, Folder, ShareLink, User

if TYPE_CHECKING:
    from pathlib import Path

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@pytest.fixture
async def q1(users, make_file):
    return await make_file("alice", "q1.pdf", size=2048)


async def _link(links: ShareLinkService, session: AsyncSession, file, **kwargs):
    return await links.create(session, "alice", ResourceRef.file(file.id), kwargs.pop("permission", "view"), **kwargs)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_token_is_url_safe_and_long(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        assert _TOKEN_RE.match(link.token)
        # 32 random bytes -> 43 base64url characters
        assert len(link.token) >= 43
        assert link.is_active
        assert link.file_id == q1.id
        assert link.folder_id is None

    async def test_tokens_unique(self, links: ShareLinkService, async_session: AsyncSession, q1):
        tokens = {(await _link(links, async_session, q1)).token for _ in range(5)}
        assert len(tokens) == 5

    async def test_token_bytes_floor(self, hierarchy: HierarchyService):
        service = ShareLinkService(ShareLink, hierarchy, token_bytes=4)
        # 16 bytes minimum -> 22 characters
        assert len(service.generate_token()) >= 22

    async def test_password_is_hashed(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22")
        assert link.has_password
        assert link.password_hash != "hunter22"

    @pytest.mark.parametrize("password", ["abc", "x" * 51])
    async def test_password_length(
        self, links: ShareLinkService, async_session: AsyncSession, q1, password: str
    ):
        with pytest.raises(ValidationError):
            await _link(links, async_session, q1, password=password)

    async def test_negative_cap(self, links: ShareLinkService, async_session: AsyncSession, q1):
        with pytest.raises(ValidationError):
            await _link(links, async_session, q1, max_downloads=-1)

    async def test_past_expiry(self, links: ShareLinkService, async_session: AsyncSession, q1):
        with pytest.raises(ValidationError):
            await _link(links, async_session, q1, expires_at=datetime.now(UTC) - timedelta(minutes=1))

    async def test_invalid_permission(self, links: ShareLinkService, async_session: AsyncSession, q1):
        with pytest.raises(ValidationError):
            await _link(links, async_session, q1, permission="admin")

    async def test_not_owner(self, links: ShareLinkService, async_session: AsyncSession, q1):
        with pytest.raises(ForbiddenError):
            await links.create(async_session, "bob", ResourceRef.file(q1.id))

    async def test_trashed_target(self, links: ShareLinkService, async_session: AsyncSession, q1):
        q1.trashed_at = datetime.now(UTC)
        await async_session.flush()
        with pytest.raises(InvalidStateError):
            await _link(links, async_session, q1)


# ---------------------------------------------------------------------------
# resolve_public check order
# ---------------------------------------------------------------------------


class TestResolvePublic:
    async def test_resolves(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, max_downloads=5, description="Q1 numbers")
        info = await links.resolve_public(async_session, link.token)
        assert info.name == "q1.pdf"
        assert info.size_bytes == 2048
        assert info.target_type == "file"
        assert info.downloads_remaining == 5
        assert info.description == "Q1 numbers"

    async def test_unknown_token(self, links: ShareLinkService, async_session: AsyncSession, q1):
        with pytest.raises(NotFoundError):
            await links.resolve_public(async_session, "no-such-token")

    async def test_trashed_target_looks_missing(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        q1.trashed_at = datetime.now(UTC)
        await async_session.flush()
        with pytest.raises(NotFoundError):
            await links.resolve_public(async_session, link.token)

    async def test_inactive(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        await links.deactivate(async_session, link)
        with pytest.raises(ForbiddenError) as exc:
            await links.resolve_public(async_session, link.token)
        assert exc.value.reason == "inactive"
        assert exc.value.public_message == "Access denied"

    async def test_expired(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        link.expires_at = datetime.now(UTC) - timedelta(seconds=1)
        await async_session.flush()
        with pytest.raises(ForbiddenError) as exc:
            await links.resolve_public(async_session, link.token)
        assert exc.value.reason == "expired"

    async def test_expired_checked_before_password(
        self, links: ShareLinkService, async_session: AsyncSession, q1
    ):
        link = await _link(links, async_session, q1, password="hunter22")
        link.expires_at = datetime.now(UTC) - timedelta(seconds=1)
        await async_session.flush()
        with pytest.raises(ForbiddenError) as exc:
            await links.resolve_public(async_session, link.token)
        assert exc.value.reason == "expired"

    async def test_cap_checked_before_password(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22", max_downloads=1)
        link.download_count = 1
        await async_session.flush()
        with pytest.raises(ExhaustedError):
            await links.resolve_public(async_session, link.token, "wrong")

    async def test_password_required(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22")
        with pytest.raises(ForbiddenError) as exc:
            await links.resolve_public(async_session, link.token)
        assert exc.value.reason == "password_required"

    async def test_password_mismatch(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22")
        with pytest.raises(ForbiddenError) as exc:
            await links.resolve_public(async_session, link.token, "hunter23")
        assert exc.value.reason == "password_mismatch"

    async def test_password_ok(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22")
        info = await links.resolve_public(async_session, link.token, "hunter22")
        assert info.target_id == q1.id


# ---------------------------------------------------------------------------
# views and downloads
# ---------------------------------------------------------------------------


class TestCounters:
    async def test_record_view_needs_no_password(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22")
        assert await links.record_view(async_session, link.token) == 1
        assert await links.record_view(async_session, link.token) == 2

    async def test_record_view_on_expired_link(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        link.expires_at = datetime.now(UTC) - timedelta(seconds=1)
        await async_session.flush()
        with pytest.raises(ForbiddenError):
            await links.record_view(async_session, link.token)

    async def test_cap_deactivates_link(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, max_downloads=1)
        consumed, file = await links.consume_download(async_session, link.token)
        assert file.id == q1.id
        assert consumed.download_count == 1
        assert not consumed.is_active

        with pytest.raises(ExhaustedError):
            await links.consume_download(async_session, link.token)
        with pytest.raises(ExhaustedError):
            await links.resolve_public(async_session, link.token)

    async def test_unlimited(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        for _ in range(3):
            consumed, _ = await links.consume_download(async_session, link.token)
        assert consumed.download_count == 3
        assert consumed.is_active

    async def test_download_requires_password(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22", max_downloads=1)
        with pytest.raises(ForbiddenError):
            await links.consume_download(async_session, link.token)
        await async_session.refresh(link)
        assert link.download_count == 0


class TestFolderLinks:
    @pytest.fixture
    async def shared(self, users, hierarchy: HierarchyService, links: ShareLinkService,
                     async_session: AsyncSession, make_file):
        reports = await hierarchy.create_folder(async_session, "alice", "Reports")
        inner = await hierarchy.create_folder(async_session, "alice", "2024", reports.id)
        inside = await make_file("alice", "inside.txt", inner.id)
        outside = await make_file("alice", "outside.txt")
        link = await links.create(async_session, "alice", ResourceRef.folder(reports.id), "view")
        return {"link": link, "reports": reports, "inside": inside, "outside": outside}

    async def test_descendant_reachable(self, links: ShareLinkService, async_session: AsyncSession, shared):
        item = await links.resolve_public_item(
            async_session, shared["link"].token, ResourceRef.file(shared["inside"].id)
        )
        assert item.id == shared["inside"].id

    async def test_outside_scope(self, links: ShareLinkService, async_session: AsyncSession, shared):
        with pytest.raises(ForbiddenError) as exc:
            await links.resolve_public_item(
                async_session, shared["link"].token, ResourceRef.file(shared["outside"].id)
            )
        assert exc.value.reason == "outside_link_scope"

    async def test_download_needs_file_id(self, links: ShareLinkService, async_session: AsyncSession, shared):
        with pytest.raises(ValidationError):
            await links.consume_download(async_session, shared["link"].token)

    async def test_download_descendant(self, links: ShareLinkService, async_session: AsyncSession, shared):
        link, file = await links.consume_download(
            async_session, shared["link"].token, file_id=shared["inside"].id
        )
        assert file.id == shared["inside"].id
        assert link.download_count == 1

    async def test_authorize_link_caps_at_permission(self, links: ShareLinkService, shared):
        link = shared["link"]
        assert links.authorize_link(link, Action.READ)
        assert not links.authorize_link(link, Action.WRITE)
        assert not links.authorize_link(link, Action.DELETE)


class TestManage:
    async def test_update_clears_password(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1, password="hunter22")
        await links.update(async_session, link, password=None, max_downloads=3)
        assert not link.has_password
        assert link.max_downloads == 3

    async def test_list_for_owner_by_target(self, links: ShareLinkService, async_session: AsyncSession, q1, make_file):
        other = await make_file("alice", "other.txt")
        await _link(links, async_session, q1)
        await _link(links, async_session, other)
        found = await links.list_for_owner(async_session, "alice", target=ResourceRef.file(q1.id))
        assert [link.file_id for link in found] == [q1.id]

    async def test_delete_is_immediate(self, links: ShareLinkService, async_session: AsyncSession, q1):
        link = await _link(links, async_session, q1)
        await links.delete(async_session, link)
        with pytest.raises(NotFoundError):
            await links.resolve_public(async_session, link.token)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentDownloads:
    async def test_cap_never_exceeded(self, tmp_path: Path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", connect_args={"timeout": 30}
        )
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        hierarchy = HierarchyService(Folder, DriveFile, User)
        links = ShareLinkService(ShareLink, hierarchy)
        files = FileService(DriveFile, hierarchy)

        async with factory() as session:
            file = await files.create(session, "alice", "q1.pdf", 10, "ab/abcdef")
            link = await links.create(session, "alice", ResourceRef.file(file.id), max_downloads=3)
            token = link.token
            await session.commit()

        async def attempt() -> bool:
            async with factory() as session:
                try:
                    await links.consume_download(session, token)
                    await session.commit()
                    return True
                except ExhaustedError:
                    await session.rollback()
                    return False

        outcomes = await asyncio.gather(*(attempt() for _ in range(10)))

        async with factory() as session:
            final = await links.get_by_token(session, token)
            assert final is not None
            assert final.download_count == 3
            assert not final.is_active
        assert outcomes.count(True) == 3
        await engine.dispose()
