"""Roles, actions, and the closest-grant-wins permission interpreter.

Everything here is pure: ``evaluate`` decides over an ``AccessSnapshot``
gathered by the resolver, so the rules can be tested without a database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from .exceptions import ValidationError
from .types import AccessDecision, ResourceRef
from .utils import is_expired

if TYPE_CHECKING:
    from .types import Principal


class Role(str, Enum):
    """Collaborator role.  Each role includes every capability below it."""

    VIEWER = "viewer"
    COMMENTER = "commenter"
    EDITOR = "editor"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def includes(self, other: Role) -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: str | Role) -> Role:
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid role: {value!r}. Must be one of: viewer, commenter, editor"
            ) from None


_ROLE_RANK = {Role.VIEWER: 1, Role.COMMENTER: 2, Role.EDITOR: 3}


class LinkPermission(str, Enum):
    """Permission level declared on a share-link."""

    VIEW = "view"
    COMMENT = "comment"
    EDIT = "edit"

    @property
    def role(self) -> Role:
        return _LINK_ROLE[self]

    @classmethod
    def parse(cls, value: str | LinkPermission) -> LinkPermission:
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid permission: {value!r}. Must be one of: view, comment, edit"
            ) from None


_LINK_ROLE = {
    LinkPermission.VIEW: Role.VIEWER,
    LinkPermission.COMMENT: Role.COMMENTER,
    LinkPermission.EDIT: Role.EDITOR,
}


class Action(str, Enum):
    """Operations a principal may request on a file or folder."""

    READ = "read"
    DOWNLOAD = "download"
    COMMENT = "comment"
    ANNOTATE = "annotate"
    WRITE = "write"
    RENAME = "rename"
    DELETE = "delete"
    MOVE = "move"
    SHARE = "share"
    RESTORE = "restore"
    PURGE = "purge"


REQUIRED_ROLE: dict[Action, Role] = {
    Action.READ: Role.VIEWER,
    Action.DOWNLOAD: Role.VIEWER,
    Action.COMMENT: Role.COMMENTER,
    Action.ANNOTATE: Role.COMMENTER,
    Action.WRITE: Role.EDITOR,
    Action.RENAME: Role.EDITOR,
    Action.DELETE: Role.EDITOR,
    Action.MOVE: Role.EDITOR,
    Action.SHARE: Role.EDITOR,
}
"""Minimum collaborator role per action.  Actions missing here are owner-only."""

TRASH_ACTIONS = frozenset({Action.RESTORE, Action.PURGE})
"""The only actions allowed on a trashed resource (and only to its owner)."""

LINK_EXCLUDED_ACTIONS = frozenset(
    {Action.DELETE, Action.MOVE, Action.SHARE, Action.RESTORE, Action.PURGE}
)
"""Ownership actions a share-link never grants, whatever its permission."""


def required_role(action: Action) -> Role | None:
    """Minimum role for *action*, or ``None`` when only the owner may do it."""
    return REQUIRED_ROLE.get(action)


@dataclass(frozen=True, slots=True)
class GrantEntry:
    """The parts of a collaborator grant the interpreter needs."""

    resource: ResourceRef
    role: Role
    expires_at: datetime | None = None


@dataclass
class AccessSnapshot:
    """Everything needed to decide access to one resource for one grantee.

    ``chain`` is the resource itself followed by its ancestors, closest
    first.  ``grants`` holds the grantee's grants keyed by position in
    ``chain`` (at most one grant per resource).
    """

    resource: ResourceRef
    owner_id: str
    trashed: bool
    chain: list[ResourceRef] = field(default_factory=list)
    grants: dict[ResourceRef, GrantEntry] = field(default_factory=dict)
    principal_active: bool = True


def resolve_role(
    snapshot: AccessSnapshot, now: datetime | None = None
) -> GrantEntry | None:
    """Return the closest non-expired grant along ``snapshot.chain``.

    The resource's own grant beats any ancestor's; an expired grant is
    treated as absent and the walk continues toward the root.
    """
    for ref in snapshot.chain:
        grant = snapshot.grants.get(ref)
        if grant is None:
            continue
        if is_expired(grant.expires_at, now):
            continue
        return grant
    return None


def evaluate(
    snapshot: AccessSnapshot,
    principal: Principal,
    action: Action,
    now: datetime | None = None,
) -> AccessDecision:
    """Decide whether *principal* may perform *action* on the snapshot's resource."""
    if principal.user_id is None:
        return AccessDecision.deny("anonymous")
    if not snapshot.principal_active:
        return AccessDecision.deny("account_inactive")

    is_owner = principal.user_id == snapshot.owner_id

    if snapshot.trashed:
        if action not in TRASH_ACTIONS:
            return AccessDecision.deny("trashed")
        if not is_owner:
            return AccessDecision.deny("owner_required")
        return AccessDecision.allow("owner")

    if is_owner:
        return AccessDecision.allow("owner")

    needed = required_role(action)
    if needed is None:
        return AccessDecision.deny("owner_required")

    grant = resolve_role(snapshot, now)
    if grant is None:
        return AccessDecision.deny("no_grant")
    if not grant.role.includes(needed):
        return AccessDecision.deny("insufficient_role")
    return AccessDecision.allow("grant", role=grant.role.value, grant_resource_id=grant.resource.id)


def link_allows(permission: LinkPermission | str, action: Action) -> bool:
    """True if a share-link with *permission* may perform *action*."""
    if action in LINK_EXCLUDED_ACTIONS:
        return False
    needed = required_role(action)
    if needed is None:
        return False
    return LinkPermission.parse(permission).role.includes(needed)
