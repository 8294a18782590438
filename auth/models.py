"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the operation modules do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")

# Permission tags required by the administration operations.
AUTH_REGISTER_PERM = "auth-register"
AUTH_INFO_PERM = "auth-info"
AUTH_UPDATE_PERM = "auth-update"
AUTH_DELETE_PERM = "auth-delete"


@dataclass
class Principal:
    """An authenticated identity.

    permissions are the directly granted tags. groups holds the ids of the
    groups the principal belongs to and group_permissions the union of their
    tags. The store loads all three in one transaction, so a Principal is a
    consistent snapshot the permission guard can evaluate without further I/O.

    password_hash is a bcrypt string ("$2b$<cost>$<salt+hash>"); the raw
    password is never stored.
    """

    login: str
    password_hash: str
    email: str
    id: int | None = None
    permissions: set[str] = field(default_factory=set)
    groups: set[int] = field(default_factory=set)
    group_permissions: set[str] = field(default_factory=set)

    @property
    def all_permissions(self) -> set[str]:
        return self.permissions | self.group_permissions


@dataclass
class PermissionGroup:
    name: str
    id: int | None = None
    permissions: set[str] = field(default_factory=set)
    users: set[int] = field(default_factory=set)


@dataclass
class BearerToken:
    """An opaque bearer token.

    Revocation sets expire to the revocation instant; rows are never deleted
    here, only when their principal is.
    """

    value: str
    user_id: int
    expire: datetime
    id: int | None = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expire


@dataclass
class SingleUseCode:
    """A one-time signin code. used is set exactly once, on redemption."""

    value: str
    user_id: int
    expire: datetime
    id: int | None = None
    used: datetime | None = None


@dataclass
class RestoreCode:
    """A one-time password reset code. Same lifecycle as SingleUseCode."""

    value: str
    user_id: int
    expire: datetime
    id: int | None = None
    used: datetime | None = None


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0
