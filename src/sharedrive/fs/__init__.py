"""Service layer — hierarchy, access, sharing, trash, stats, blobs."""

from sharedrive.fs.access import AccessResolver
from sharedrive.fs.activity import ActivityService
from sharedrive.fs.audit import AuditService
from sharedrive.fs.blobs import BlobStore, LocalBlobStore
from sharedrive.fs.collaborators import CollaboratorService
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
from sharedrive.fs.files import FileService
from sharedrive.fs.hierarchy import HierarchyService
from sharedrive.fs.permissions import Action, LinkPermission, Role
from sharedrive.fs.sharing import ShareLinkService
from sharedrive.fs.stats import StatsService
from sharedrive.fs.trash import TrashService
from sharedrive.fs.types import (
    AccessDecision,
    Principal,
    ResourceRef,
    ResourceType,
)

__all__ = [
    "AccessDecision",
    "AccessResolver",
    "ActivityService",
    "Action",
    "AuditService",
    "AuthenticationRequiredError",
    "BlobStore",
    "CollaboratorService",
    "ConflictError",
    "DriveError",
    "ExhaustedError",
    "FileService",
    "ForbiddenError",
    "HierarchyService",
    "InvalidStateError",
    "LinkPermission",
    "LocalBlobStore",
    "NotFoundError",
    "Principal",
    "ResourceRef",
    "ResourceType",
    "Role",
    "ShareLinkService",
    "StatsService",
    "StorageError",
    "TrashService",
    "ValidationError",
]
