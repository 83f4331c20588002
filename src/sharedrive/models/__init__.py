"""SQLModel database models for sharedrive."""

from sharedrive.models.accesses import FileAccess
from sharedrive.models.audit import AuditLog
from sharedrive.models.collaborators import Collaborator
from sharedrive.models.files import DriveFile, Folder
from sharedrive.models.links import ShareLink
from sharedrive.models.stats import UserStats
from sharedrive.models.users import User

__all__ = [
    "AuditLog",
    "Collaborator",
    "DriveFile",
    "FileAccess",
    "Folder",
    "ShareLink",
    "User",
    "UserStats",
]
