"""
auth/groups.py -- Permission group administration.

A group is a named set of permissions with a set of member principals.
Members inherit the group's permissions (flat: groups do not contain groups).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from auth.errors import GroupNotFound, UserNotFound
from auth.models import Page, PermissionGroup
from auth.users import page_window

if TYPE_CHECKING:
    from auth.context import AuthContext

logger = logging.getLogger("tokenauth.groups")


def _guard_users(ctx: AuthContext, user_ids: Iterable[int]) -> set[int]:
    wanted = set(user_ids)
    missing = wanted - ctx.store.existing_user_ids(wanted)
    if missing:
        raise UserNotFound(f"User not found: {min(missing)}.")
    return wanted


def create_group(ctx: AuthContext, name: str, permissions: Iterable[str] = (), users: Iterable[int] = ()) -> int:
    group = PermissionGroup(name=name, permissions=set(permissions), users=_guard_users(ctx, users))
    group_id = ctx.store.create_group(group)
    logger.info("Group %d (%s) created", group_id, name)
    return group_id


def get_group(ctx: AuthContext, group_id: int) -> PermissionGroup:
    group = ctx.store.get_group(group_id)
    if group is None:
        raise GroupNotFound()
    return group


def list_groups(ctx: AuthContext, page: int = 0, page_size: int | None = None) -> Page[PermissionGroup]:
    page, size = page_window(ctx, page, page_size)
    items, total = ctx.store.list_groups(page * size, size)
    return Page(items=items, total=total, page=page, page_size=size)


def replace_group(
    ctx: AuthContext, group_id: int, name: str, permissions: Iterable[str], users: Iterable[int]
) -> None:
    patch_group(ctx, group_id, name=name, permissions=set(permissions), users=set(users))


def patch_group(
    ctx: AuthContext,
    group_id: int,
    *,
    name: str | None = None,
    permissions: Iterable[str] | None = None,
    users: Iterable[int] | None = None,
) -> None:
    """Change only the given fields of a group."""
    members = _guard_users(ctx, users) if users is not None else None
    updated = ctx.store.update_group(
        group_id,
        name=name,
        permissions=set(permissions) if permissions is not None else None,
        users=members,
    )
    if not updated:
        raise GroupNotFound()
    logger.info("Group %d updated", group_id)


def delete_group(ctx: AuthContext, group_id: int) -> None:
    if not ctx.store.delete_group(group_id):
        raise GroupNotFound()
    logger.info("Group %d deleted", group_id)
