"""Custom exception hierarchy for the sharedrive service layer.

Every error carries a ``status_code`` so the calling layer can translate
it without a lookup table.
"""


class DriveError(Exception):
    """Base exception for all sharedrive errors."""

    status_code = 500


class ValidationError(DriveError):
    """Raised on malformed input (empty names, unknown roles, bad colors)."""

    status_code = 400


class AuthenticationRequiredError(DriveError):
    """Raised when an anonymous principal calls an authenticated operation."""

    status_code = 401


class NotFoundError(DriveError):
    """Raised when a file, folder, user, grant, or share token does not exist."""

    status_code = 404


class ForbiddenError(DriveError):
    """Raised when authorization is denied.

    ``reason`` is the precise internal reason (``"expired"``,
    ``"password_mismatch"``, ...).  ``public_message`` is what anonymous
    callers may be shown; it never distinguishes between reasons.
    """

    status_code = 403
    public_message = "Access denied"

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or f"Access denied: {reason}")


class ExhaustedError(ForbiddenError):
    """Raised when a share-link has reached its download cap."""

    status_code = 410

    def __init__(self, message: str | None = None) -> None:
        super().__init__("download_limit_reached", message or "Share link download limit reached")


class ConflictError(DriveError):
    """Raised on cyclic moves and duplicate sibling folder names."""

    status_code = 409


class InvalidStateError(DriveError):
    """Raised when an operation does not fit the resource's lifecycle state."""

    status_code = 409


class StorageError(DriveError):
    """Raised on blob-store failures."""

    status_code = 502
