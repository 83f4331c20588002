"""EventBus and event types for post-commit aggregation."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Drive operations that rollups, the audit log, and the access log follow."""

    FILE_UPLOADED = "file_uploaded"
    FILE_VIEWED = "file_viewed"
    FILE_DOWNLOADED = "file_downloaded"
    FILE_UPDATED = "file_updated"
    RESOURCE_MOVED = "resource_moved"
    RESOURCE_TRASHED = "resource_trashed"
    RESOURCE_RESTORED = "resource_restored"
    RESOURCE_PURGED = "resource_purged"
    SHARE_CHANGED = "share_changed"


# mutations only; reads go to the file-access log
MUTATIONS = frozenset(EventType) - {EventType.FILE_VIEWED}


@dataclass(frozen=True, slots=True)
class DriveEvent:
    """Immutable record of a committed drive operation.

    Attributes:
        event_type: The kind of operation that occurred.
        owner_id: Owner of the affected resource.
        resource_type: ``"file"`` or ``"folder"``.
        resource_id: Id of the resource the caller acted on.
        actor_id: Acting user, ``None`` for anonymous share-link access.
        files: Number of files whose state changed (cascades count every file).
        size_bytes: Bytes added (uploads) or removed (purges).
        active_files: Files purged while still active (folder purges only).
        downloads: Lifetime downloads of the files a purge removed.
        details: Free-form context for the audit log.
    """

    event_type: EventType
    owner_id: str
    resource_type: str = ""
    resource_id: str | None = None
    actor_id: str | None = None
    files: int = 0
    size_bytes: int = 0
    active_files: int = 0
    downloads: int = 0
    details: str = ""


Handler = Callable[[DriveEvent], Awaitable[None]]


class EventBus:
    """Fans committed drive events out to subscribers.

    Each subscriber names the event types it follows, or none to follow
    every type.  Subscribers run one after another in subscription order;
    a subscriber that raises is logged and skipped, so a failing rollup
    leaves derived state stale without failing the request that committed.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[Handler, frozenset[EventType]]] = []

    def subscribe(self, handler: Handler, *event_types: EventType) -> None:
        """Call *handler* for each of *event_types*, or for every event when none are given."""
        self._subscribers.append((handler, frozenset(event_types or EventType)))

    def subscribers(self, event_type: EventType) -> list[Handler]:
        return [handler for handler, types in self._subscribers if event_type in types]

    async def emit(self, event: DriveEvent) -> int:
        """Deliver *event* to its subscribers.  Return how many of them failed."""
        failed = 0
        for handler in self.subscribers(event.event_type):
            try:
                await handler(event)
            except Exception:
                failed += 1
                logger.warning(
                    "Handler %r failed for %s on %s %s",
                    handler,
                    event.event_type.value,
                    event.resource_type,
                    event.resource_id,
                    exc_info=True,
                )
        return failed

    def clear(self) -> None:
        """Drop every subscriber."""
        self._subscribers.clear()
