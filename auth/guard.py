"""
auth/guard.py -- Permission Guard.

check() is a pure predicate over a Principal snapshot: it does no I/O and has
no side effects. The snapshot (direct permissions, memberships and the
member groups' permissions) is loaded in one transaction by
AuthStore.get_principal(), which is what keeps a concurrent membership edit
from producing a half-old, half-new view.

Rule:
  pass  iff  admin in (direct | group)  or  required <= (direct | group)

An empty required set always passes. Groups do not nest: a principal
inherits the permissions of the groups it is directly a member of, nothing
more.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.errors import Forbidden
from auth.models import Principal


def check(principal: Principal, required: Iterable[str], admin_permission: str = "admin") -> bool:
    granted = principal.all_permissions
    if admin_permission in granted:
        return True
    return set(required) <= granted


def guard(principal: Principal, required: Iterable[str], admin_permission: str = "admin") -> None:
    """Raise Forbidden unless check() passes.

    The message lists the required tags the principal lacks, never the tags
    it holds.
    """
    required = set(required)
    if not check(principal, required, admin_permission):
        missing = sorted(required - principal.all_permissions)
        raise Forbidden(f"User doesn't have all required permissions: {', '.join(missing)}.")
