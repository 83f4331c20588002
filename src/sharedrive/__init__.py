"""sharedrive: access control and lifecycle engine for multi-tenant file sharing.

Folders, files, collaborator grants, public share-links, and trash, behind
one authorization path.
"""

__version__ = "0.1.0"

from sharedrive._drive import Drive
from sharedrive._drive_async import DriveAsync
from sharedrive.config import DriveSettings, configure_logging, get_settings
from sharedrive.events import DriveEvent, EventBus, EventType
from sharedrive.fs.blobs import BlobStore, LocalBlobStore
from sharedrive.fs.exceptions import (
    AuthenticationRequiredError,
    ConflictError,
    DriveError,
    ExhaustedError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from sharedrive.fs.permissions import Action, LinkPermission, Role
from sharedrive.fs.types import (
    ANONYMOUS,
    AccessDecision,
    Breadcrumb,
    CollaboratorInfo,
    FileAccessInfo,
    DownloadTicket,
    FileInfo,
    FolderInfo,
    ListChildrenResult,
    Principal,
    PublicShareInfo,
    PurgeResult,
    ReconcileReport,
    ResourceRef,
    ResourceType,
    ShareLinkInfo,
    SystemStats,
    TrashListResult,
    TrashResult,
    UserStatsInfo,
)

__all__ = [
    "ANONYMOUS",
    "AccessDecision",
    "Action",
    "AuthenticationRequiredError",
    "BlobStore",
    "Breadcrumb",
    "CollaboratorInfo",
    "ConflictError",
    "DownloadTicket",
    "Drive",
    "DriveAsync",
    "DriveError",
    "DriveEvent",
    "DriveSettings",
    "EventBus",
    "EventType",
    "ExhaustedError",
    "FileAccessInfo",
    "FileInfo",
    "FolderInfo",
    "ForbiddenError",
    "InvalidStateError",
    "LinkPermission",
    "ListChildrenResult",
    "LocalBlobStore",
    "NotFoundError",
    "Principal",
    "PublicShareInfo",
    "PurgeResult",
    "ReconcileReport",
    "ResourceRef",
    "ResourceType",
    "Role",
    "ShareLinkInfo",
    "StorageError",
    "SystemStats",
    "TrashListResult",
    "TrashResult",
    "UserStatsInfo",
    "ValidationError",
    "__version__",
    "configure_logging",
    "get_settings",
]
