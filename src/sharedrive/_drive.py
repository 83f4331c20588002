"""Drive — synchronous wrapper around DriveAsync."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import TYPE_CHECKING, Any

from sharedrive._drive_async import DriveAsync

if TYPE_CHECKING:
    from sharedrive.fs.permissions import Action
    from sharedrive.fs.types import (
        Breadcrumb,
        CollaboratorInfo,
        DownloadTicket,
        FileAccessInfo,
        FileInfo,
        FolderInfo,
        ListChildrenResult,
        Principal,
        PublicShareInfo,
        PurgeResult,
        ReconcileReport,
        ResourceRef,
        ShareLinkInfo,
        SystemStats,
        TrashListResult,
        TrashResult,
        UserStatsInfo,
    )
    from sharedrive.models.users import UserBase

logger = logging.getLogger(__name__)


class Drive:
    """Synchronous drive API backed by a private event loop in a background thread.

    Every method blocks on the matching ``DriveAsync`` coroutine, so the
    drive can be used from plain sync code or from inside a foreign event
    loop (a web framework's worker, a notebook).

    Usage::

        with Drive(database_url="sqlite+aiosqlite:///drive.db") as drive:
            alice = drive.create_user("alice@example.com")
            me = Principal(alice.id)
            folder = drive.create_folder(me, "Reports")
            drive.upload(me, b"...", "q1.pdf", folder_id=folder.id)
    """

    def __init__(self, *, create_tables: bool = True, **kwargs: Any) -> None:
        self._closed = False

        # Private event loop in a daemon thread
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, daemon=True)
        self._thread.start()

        self._async = DriveAsync(**kwargs)
        if create_tables:
            self._run(self._async.create_tables())

    def _run(self, coro: Any) -> Any:
        """Submit *coro* to the private loop and block for the result."""
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()

    def close(self) -> None:
        """Dispose the engine, stop the event loop and join the thread."""
        if self._closed:
            return
        self._closed = True
        try:
            self._run(self._async.close())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)

    def __enter__(self) -> Drive:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    @property
    def aio(self) -> DriveAsync:
        """The underlying ``DriveAsync`` (for advanced async use)."""
        return self._async

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, email: str, **kwargs: Any) -> UserBase:
        return self._run(self._async.create_user(email, **kwargs))

    def get_user(self, user_id: str) -> UserBase:
        return self._run(self._async.get_user(user_id))

    def set_user_flags(self, principal: Principal, user_id: str, **flags: bool) -> UserBase:
        return self._run(self._async.set_user_flags(principal, user_id, **flags))

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def create_folder(
        self, principal: Principal, name: str, parent_id: str | None = None, *, color: str | None = None
    ) -> FolderInfo:
        return self._run(self._async.create_folder(principal, name, parent_id, color=color))

    def get_folder(self, principal: Principal, folder_id: str) -> FolderInfo:
        return self._run(self._async.get_folder(principal, folder_id))

    def update_folder(self, principal: Principal, folder_id: str, **kwargs: Any) -> FolderInfo:
        return self._run(self._async.update_folder(principal, folder_id, **kwargs))

    def move_folder(self, principal: Principal, folder_id: str, new_parent_id: str | None) -> FolderInfo:
        return self._run(self._async.move_folder(principal, folder_id, new_parent_id))

    def list_children(
        self, principal: Principal, folder_id: str | None = None, **kwargs: Any
    ) -> ListChildrenResult:
        return self._run(self._async.list_children(principal, folder_id, **kwargs))

    def breadcrumbs(self, principal: Principal, folder_id: str) -> list[Breadcrumb]:
        return self._run(self._async.breadcrumbs(principal, folder_id))

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload(self, principal: Principal, data: bytes, name: str, **kwargs: Any) -> FileInfo:
        return self._run(self._async.upload(principal, data, name, **kwargs))

    def get_file(self, principal: Principal, file_id: str) -> FileInfo:
        return self._run(self._async.get_file(principal, file_id))

    def update_file(self, principal: Principal, file_id: str, **kwargs: Any) -> FileInfo:
        return self._run(self._async.update_file(principal, file_id, **kwargs))

    def rename_file(self, principal: Principal, file_id: str, name: str) -> FileInfo:
        return self._run(self._async.rename_file(principal, file_id, name))

    def move_file(self, principal: Principal, file_id: str, folder_id: str | None) -> FileInfo:
        return self._run(self._async.move_file(principal, file_id, folder_id))

    def download(self, principal: Principal, file_id: str) -> DownloadTicket:
        return self._run(self._async.download(principal, file_id))

    def list_starred(self, principal: Principal, *, limit: int = 50) -> list[FileInfo]:
        return self._run(self._async.list_starred(principal, limit=limit))

    def list_recent(self, principal: Principal, *, limit: int = 20) -> list[FileInfo]:
        return self._run(self._async.list_recent(principal, limit=limit))

    def file_access_history(
        self, principal: Principal, file_id: str, **kwargs: Any
    ) -> tuple[list[FileAccessInfo], int]:
        return self._run(self._async.file_access_history(principal, file_id, **kwargs))

    def cleanup_file_accesses(self, older_than_days: int) -> int:
        return self._run(self._async.cleanup_file_accesses(older_than_days))

    def search(self, principal: Principal, query: str, *, limit: int = 50) -> list[FileInfo]:
        return self._run(self._async.search(principal, query, limit=limit))

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def add_collaborator(
        self, principal: Principal, ref: ResourceRef, grantee_id: str, role: str = "viewer", **kwargs: Any
    ) -> CollaboratorInfo:
        return self._run(self._async.add_collaborator(principal, ref, grantee_id, role, **kwargs))

    def update_collaborator(self, principal: Principal, grant_id: str, **kwargs: Any) -> CollaboratorInfo:
        return self._run(self._async.update_collaborator(principal, grant_id, **kwargs))

    def remove_collaborator(self, principal: Principal, ref: ResourceRef, grantee_id: str) -> bool:
        return self._run(self._async.remove_collaborator(principal, ref, grantee_id))

    def list_collaborators(self, principal: Principal, ref: ResourceRef) -> list[CollaboratorInfo]:
        return self._run(self._async.list_collaborators(principal, ref))

    def shared_with_me(self, principal: Principal, **kwargs: Any) -> list[CollaboratorInfo]:
        return self._run(self._async.shared_with_me(principal, **kwargs))

    def cleanup_expired_grants(self) -> int:
        return self._run(self._async.cleanup_expired_grants())

    # ------------------------------------------------------------------
    # Share-links
    # ------------------------------------------------------------------

    def create_share_link(
        self, principal: Principal, ref: ResourceRef, permission: str = "view", **kwargs: Any
    ) -> ShareLinkInfo:
        return self._run(self._async.create_share_link(principal, ref, permission, **kwargs))

    def get_share_link(self, principal: Principal, link_id: str) -> ShareLinkInfo:
        return self._run(self._async.get_share_link(principal, link_id))

    def list_share_links(self, principal: Principal, **kwargs: Any) -> list[ShareLinkInfo]:
        return self._run(self._async.list_share_links(principal, **kwargs))

    def update_share_link(self, principal: Principal, link_id: str, **kwargs: Any) -> ShareLinkInfo:
        return self._run(self._async.update_share_link(principal, link_id, **kwargs))

    def deactivate_share_link(self, principal: Principal, link_id: str) -> ShareLinkInfo:
        return self._run(self._async.deactivate_share_link(principal, link_id))

    def delete_share_link(self, principal: Principal, link_id: str) -> None:
        self._run(self._async.delete_share_link(principal, link_id))

    def resolve_share(self, token: str, password: str | None = None) -> PublicShareInfo:
        return self._run(self._async.resolve_share(token, password))

    def record_share_view(self, token: str) -> int:
        return self._run(self._async.record_share_view(token))

    def share_allows(self, token: str, action: Action, password: str | None = None) -> bool:
        return self._run(self._async.share_allows(token, action, password))

    def list_shared_folder(self, token: str, password: str | None = None, **kwargs: Any) -> ListChildrenResult:
        return self._run(self._async.list_shared_folder(token, password, **kwargs))

    def share_download(
        self, token: str, password: str | None = None, *, file_id: str | None = None
    ) -> DownloadTicket:
        return self._run(self._async.share_download(token, password, file_id=file_id))

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    def trash(self, principal: Principal, ref: ResourceRef) -> TrashResult:
        return self._run(self._async.trash(principal, ref))

    def restore(self, principal: Principal, ref: ResourceRef, *, cascade: bool = False) -> TrashResult:
        return self._run(self._async.restore(principal, ref, cascade=cascade))

    def purge(self, principal: Principal, ref: ResourceRef) -> PurgeResult:
        return self._run(self._async.purge(principal, ref))

    def empty_trash(self, principal: Principal) -> PurgeResult:
        return self._run(self._async.empty_trash(principal))

    def list_trash(self, principal: Principal, **kwargs: Any) -> TrashListResult:
        return self._run(self._async.list_trash(principal, **kwargs))

    def purge_expired(self, older_than_days: int | None = None) -> list[PurgeResult]:
        return self._run(self._async.purge_expired(older_than_days))

    # ------------------------------------------------------------------
    # Stats and audit
    # ------------------------------------------------------------------

    def get_stats(self, principal: Principal, user_id: str | None = None) -> UserStatsInfo:
        return self._run(self._async.get_stats(principal, user_id))

    def system_stats(self, principal: Principal) -> SystemStats:
        return self._run(self._async.system_stats(principal))

    def reconcile(self) -> ReconcileReport:
        return self._run(self._async.reconcile())

    def list_audit(self, principal: Principal, **kwargs: Any) -> tuple[list[Any], int]:
        return self._run(self._async.list_audit(principal, **kwargs))
