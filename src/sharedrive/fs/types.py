"""Value types: principals, decisions, listings, and result records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from sharedrive.models.files import DriveFileBase, FolderBase
    from sharedrive.models.links import ShareLinkBase


class ResourceType(str, Enum):
    """Kinds of resources that can be authorized, shared, and trashed."""

    FILE = "file"
    FOLDER = "folder"


@dataclass(frozen=True, slots=True)
class Principal:
    """Caller identity supplied per request by the authentication layer.

    ``user_id`` is ``None`` for anonymous callers.
    """

    user_id: str | None
    is_admin: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    @classmethod
    def anonymous(cls) -> Principal:
        return cls(user_id=None)


ANONYMOUS = Principal.anonymous()


@dataclass(frozen=True, slots=True)
class ResourceRef:
    """Typed pointer to a file or folder."""

    type: ResourceType
    id: str

    @classmethod
    def file(cls, file_id: str) -> ResourceRef:
        return cls(ResourceType.FILE, file_id)

    @classmethod
    def folder(cls, folder_id: str) -> ResourceRef:
        return cls(ResourceType.FOLDER, folder_id)


@dataclass(frozen=True, slots=True)
class AccessDecision:
    """Outcome of ``AccessResolver.authorize``.

    ``via`` names what granted access: ``"owner"``, ``"grant"`` or ``""``
    on denial.  ``role`` is the effective collaborator role, if any.
    """

    allowed: bool
    reason: str = ""
    via: str = ""
    role: str | None = None
    grant_resource_id: str | None = None

    @classmethod
    def allow(cls, via: str, role: str | None = None, grant_resource_id: str | None = None) -> AccessDecision:
        return cls(allowed=True, via=via, role=role, grant_resource_id=grant_resource_id)

    @classmethod
    def deny(cls, reason: str) -> AccessDecision:
        return cls(allowed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed


@dataclass
class Breadcrumb:
    """One step of a folder's ancestor chain."""

    id: str
    name: str
    path: str


@dataclass
class FolderInfo:
    """Folder metadata with derived child counts."""

    id: str
    name: str
    path: str
    owner_id: str
    parent_id: str | None = None
    color: str = ""
    file_count: int = 0
    subfolder_count: int = 0
    trashed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_trashed(self) -> bool:
        return self.trashed_at is not None


@dataclass
class FileInfo:
    """File metadata."""

    id: str
    name: str
    original_name: str
    owner_id: str
    size_bytes: int
    mime_type: str
    folder_id: str | None = None
    extension: str = ""
    is_public: bool = False
    is_starred: bool = False
    description: str = ""
    tags: list[str] = field(default_factory=list)
    download_count: int = 0
    trashed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_trashed(self) -> bool:
        return self.trashed_at is not None


@dataclass
class ListChildrenResult:
    """One page of a folder listing.  Folders sort before files."""

    folders: list[FolderInfo] = field(default_factory=list)
    files: list[FileInfo] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    folder_id: str | None = None

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


@dataclass
class TrashListResult:
    """One page of a user's trash."""

    folders: list[FolderInfo] = field(default_factory=list)
    files: list[FileInfo] = field(default_factory=list)
    total_folders: int = 0
    total_files: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total(self) -> int:
        return self.total_folders + self.total_files


@dataclass
class TrashResult:
    """Result of a trash or restore operation."""

    resource: ResourceRef
    batch_id: str | None = None
    trashed_at: datetime | None = None
    affected_folders: list[str] = field(default_factory=list)
    affected_files: list[str] = field(default_factory=list)
    relocated_to_root: bool = False
    already_in_state: bool = False

    @property
    def total_affected(self) -> int:
        return len(self.affected_folders) + len(self.affected_files)


@dataclass
class PurgeResult:
    """Result of a permanent deletion."""

    purged_folders: list[str] = field(default_factory=list)
    purged_files: list[str] = field(default_factory=list)
    purged_bytes: int = 0
    active_files_purged: int = 0
    downloads: int = 0
    object_refs: list[str] = field(default_factory=list)
    owner_id: str | None = None

    @property
    def total_purged(self) -> int:
        return len(self.purged_folders) + len(self.purged_files)

    def merge(self, other: PurgeResult) -> None:
        self.purged_folders.extend(other.purged_folders)
        self.purged_files.extend(other.purged_files)
        self.purged_bytes += other.purged_bytes
        self.active_files_purged += other.active_files_purged
        self.downloads += other.downloads
        self.object_refs.extend(other.object_refs)


@dataclass
class ShareLinkInfo:
    """Owner-facing share-link view.  Never carries the password hash."""

    id: str
    token: str
    owner_id: str
    target_type: str
    target_id: str
    permission: str
    has_password: bool
    is_active: bool
    max_downloads: int
    download_count: int
    view_count: int
    description: str = ""
    expires_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_link(cls, link: ShareLinkBase) -> ShareLinkInfo:
        return cls(
            id=link.id,
            token=link.token,
            owner_id=link.owner_id,
            target_type=link.target_type,
            target_id=link.target_id,
            permission=link.permission,
            has_password=link.has_password,
            is_active=link.is_active,
            max_downloads=link.max_downloads,
            download_count=link.download_count,
            view_count=link.view_count,
            description=link.description,
            expires_at=link.expires_at,
            created_at=link.created_at,
        )


@dataclass
class PublicShareInfo:
    """What an anonymous token bearer learns after a successful resolve."""

    token: str
    permission: str
    target_type: str
    target_id: str
    name: str
    description: str = ""
    size_bytes: int | None = None
    mime_type: str | None = None
    expires_at: datetime | None = None
    downloads_remaining: int | None = None


@dataclass
class DownloadTicket:
    """A presigned URL for one download."""

    file_id: str
    url: str
    name: str
    mime_type: str
    size_bytes: int
    expires_in: int


@dataclass
class CollaboratorInfo:
    """A collaborator grant as shown to the resource owner."""

    id: str
    resource_type: str
    resource_id: str
    grantee_id: str
    role: str
    granted_by: str = ""
    expires_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class UserStatsInfo:
    """Per-user dashboard rollup."""

    user_id: str
    file_count: int = 0
    trashed_file_count: int = 0
    storage_bytes: int = 0
    shared_file_count: int = 0
    download_count: int = 0
    recomputed_at: datetime | None = None


@dataclass
class SystemStats:
    """Admin-wide totals."""

    total_users: int = 0
    active_users: int = 0
    total_files: int = 0
    total_bytes: int = 0
    public_files: int = 0
    private_files: int = 0
    total_downloads: int = 0
    active_grants: int = 0
    expired_grants: int = 0
    active_share_links: int = 0


@dataclass
class ReconcileReport:
    """Drift found and corrected by a full recompute."""

    users_checked: int = 0
    users_corrected: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


@dataclass
class FileAccessInfo:
    """One entry of a file's access history."""

    id: str
    file_id: str
    user_id: str
    action: str
    accessed_at: datetime | None = None


def folder_to_info(f: FolderBase, file_count: int = 0, subfolder_count: int = 0) -> FolderInfo:
    """Convert a folder record to FolderInfo."""
    return FolderInfo(
        id=f.id,
        name=f.name,
        path=f.path,
        owner_id=f.owner_id,
        parent_id=f.parent_id,
        color=f.color,
        file_count=file_count,
        subfolder_count=subfolder_count,
        trashed_at=f.trashed_at,
        created_at=f.created_at,
        updated_at=f.updated_at,
    )


def file_to_info(f: DriveFileBase) -> FileInfo:
    """Convert a file record to FileInfo."""
    return FileInfo(
        id=f.id,
        name=f.name,
        original_name=f.original_name,
        owner_id=f.owner_id,
        size_bytes=f.size_bytes,
        mime_type=f.mime_type,
        folder_id=f.folder_id,
        extension=f.extension,
        is_public=f.is_public,
        is_starred=f.is_starred,
        description=f.description,
        tags=f.tag_list,
        download_count=f.download_count,
        trashed_at=f.trashed_at,
        created_at=f.created_at,
        updated_at=f.updated_at,
    )
