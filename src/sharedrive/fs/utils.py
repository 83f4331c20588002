"""Name validation, path building, time helpers, and pagination."""

from __future__ import annotations

import mimetypes
import posixpath
import re
from datetime import UTC, datetime

from .exceptions import ValidationError

# =============================================================================
# Names
# =============================================================================

MAX_NAME_LENGTH = 255

# Reserved filenames (Windows compatibility)
RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}

_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
_UNSAFE_CHARS_RE = re.compile(r'[\x00-\x1f<>:"|?*\\/]')


def validate_name(name: str, kind: str = "name") -> str:
    """Return *name* stripped, or raise ``ValidationError``.

    Rejects empty names, ``.``/``..``, slashes, control characters,
    reserved device names, and names longer than 255 characters.
    """
    if name is None:
        raise ValidationError(f"{kind} is required")
    name = name.strip()
    if not name:
        raise ValidationError(f"{kind} cannot be empty")
    if name in (".", ".."):
        raise ValidationError(f"Invalid {kind}: {name!r}")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"{kind} too long (max {MAX_NAME_LENGTH} characters)")
    if "/" in name or "\\" in name or "\0" in name:
        raise ValidationError(f"{kind} cannot contain slashes or null bytes")
    if any(ord(c) < 32 for c in name):
        raise ValidationError(f"{kind} cannot contain control characters")
    stem = name.split(".")[0].upper()
    if stem in RESERVED_NAMES:
        raise ValidationError(f"Reserved {kind}: {name}")
    return name


def sanitize_filename(original_name: str) -> str:
    """Derive a storage-safe display name from an uploaded file name.

    Unsafe characters are replaced by ``_``; the result is then validated.
    """
    base = posixpath.basename((original_name or "").replace("\\", "/")).strip()
    cleaned = _UNSAFE_CHARS_RE.sub("_", base)
    if cleaned in ("", ".", ".."):
        cleaned = "untitled"
    return validate_name(cleaned[:MAX_NAME_LENGTH], "file name")


def validate_color(color: str | None) -> str:
    """Return a ``#rrggbb`` color (lowercased) or ``""``."""
    if not color:
        return ""
    if not _COLOR_RE.match(color):
        raise ValidationError(f"Invalid color: {color!r}. Must be #rrggbb")
    return color.lower()


def file_extension(name: str) -> str:
    """Return the lowercase extension without the dot, or ``""``."""
    _, ext = posixpath.splitext(name)
    return ext[1:].lower()


def guess_mime_type(name: str) -> str:
    """Guess a MIME type from a file name, defaulting to octet-stream."""
    mime, _ = mimetypes.guess_type(name)
    return mime or "application/octet-stream"


def normalize_tags(tags: str | list[str] | None) -> str:
    """Return tags as a comma-separated string with duplicates removed."""
    if not tags:
        return ""
    items = tags.split(",") if isinstance(tags, str) else tags
    seen: list[str] = []
    for item in items:
        tag = item.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return ",".join(seen)


# =============================================================================
# Paths
# =============================================================================


def child_path(parent_path: str | None, name: str) -> str:
    """Materialized path of *name* under *parent_path* (``None`` = root).

    Examples:
        child_path(None, "Reports") -> "/Reports"
        child_path("/Reports", "2024") -> "/Reports/2024"
    """
    if not parent_path or parent_path == "/":
        return "/" + name
    return parent_path.rstrip("/") + "/" + name


def escape_like(value: str) -> str:
    """Escape SQL LIKE wildcards so *value* matches literally (escape ``\\``)."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# =============================================================================
# Time
# =============================================================================


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """True if *expires_at* is set and not in the future."""
    exp = as_utc(expires_at)
    if exp is None:
        return False
    return exp <= (now or utcnow())


# =============================================================================
# Pagination
# =============================================================================


def clamp_page(page: int, limit: int, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    """Clamp *page* to >= 1 and *limit* into ``1..max_limit``.

    Out-of-range limits fall back to *default_limit*.
    """
    if page < 1:
        page = 1
    if limit < 1 or limit > max_limit:
        limit = default_limit
    return page, limit
