"""
OSS Manager - Role-Based Access Control (RBAC)

Resources, actions, the immutable claims snapshot carried by a session
credential, and the pure evaluation functions over it.
This is the authoritative source for permission semantics.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple


# ============================================================
# Resources & Actions
# ============================================================


class Resource(str, Enum):
    """Protected domains a permission can refer to."""

    USER = "USER"
    ROLE = "ROLE"
    PERMISSION = "PERMISSION"
    FILE = "FILE"
    STORAGE = "STORAGE"
    CONFIG = "CONFIG"

    # Super-admin tag: holding it with any action satisfies every check
    MANAGER = "MANAGER"


class Action(str, Enum):
    """Operations on a resource. ALL matches every action."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LIST = "LIST"
    ALL = "ALL"


# ============================================================
# Grants & Claims
# ============================================================


@dataclass(frozen=True)
class PermissionGrant:
    """A single (resource, action) pair from a role's permission set."""

    resource: Resource
    action: Action

    def matches(self, resource: Resource, action: Optional[Action] = None) -> bool:
        """Check this grant against a required resource and optional action."""
        if self.resource is not resource:
            return False
        if action is None:
            return True
        return self.action is Action.ALL or self.action is action

    def to_pair(self) -> Tuple[str, str]:
        return (self.resource.value, self.action.value)

    @classmethod
    def from_pair(cls, pair: Iterable[str]) -> "PermissionGrant":
        resource, action = pair
        return cls(resource=Resource(resource), action=Action(action))


@dataclass(frozen=True)
class BucketGrant:
    """A region/bucket location a role has been granted."""

    region_code: str
    bucket_name: str

    def to_pair(self) -> Tuple[str, str]:
        return (self.region_code, self.bucket_name)


@dataclass(frozen=True)
class Claims:
    """
    Decoded, verified content of a session credential.

    Snapshot taken at issuance; evaluation never re-reads the store.
    """

    user_id: int
    username: str
    roles: Tuple[str, ...] = ()
    permissions: FrozenSet[PermissionGrant] = field(default_factory=frozenset)
    buckets: FrozenSet[BucketGrant] = field(default_factory=frozenset)
    issued_at: int = 0
    expires_at: int = 0
    session_id: Optional[str] = None


# ============================================================
# Evaluation
# ============================================================


def effective_permissions(grants: Iterable[PermissionGrant]) -> FrozenSet[PermissionGrant]:
    """Union of grants across all of a user's roles."""
    return frozenset(grants)


def is_manager(claims: Claims) -> bool:
    """Check if the identity holds the MANAGER tag with any action."""
    return any(grant.resource is Resource.MANAGER for grant in claims.permissions)


def has_permission(
    claims: Claims,
    resource: Resource,
    action: Optional[Action] = None,
) -> bool:
    """
    Check if claims satisfy a required (resource, action).

    True when a grant matches the resource and the action (or the action is
    omitted, or the grant action is ALL), or when the identity is a manager.
    """
    if is_manager(claims):
        return True
    return any(grant.matches(resource, action) for grant in claims.permissions)


def can_access_bucket(claims: Claims, region_code: str, bucket_name: str) -> bool:
    """Region/bucket grants are an allow-list; absence means no access."""
    if is_manager(claims):
        return True
    return BucketGrant(region_code, bucket_name) in claims.buckets


def can_grant(
    claims: Claims,
    permissions: Iterable[PermissionGrant] = (),
    buckets: Iterable[BucketGrant] = (),
) -> bool:
    """
    Check if the identity may hand the given grants to a role or user.

    Managers may grant anything. Anyone else may only pass on permissions
    and bucket grants they hold themselves, so a MANAGER grant can never be
    handed out by a non-manager.
    """
    if is_manager(claims):
        return True
    return all(
        has_permission(claims, grant.resource, grant.action) for grant in permissions
    ) and all(
        can_access_bucket(claims, bucket.region_code, bucket.bucket_name) for bucket in buckets
    )
