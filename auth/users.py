"""
auth/users.py -- Principal administration: signup, read, list, patch, replace, delete.

These operations do not check permissions themselves. The boundary resolves
the caller's token against the matching tag first (auth-register for signup,
auth-info for reads, auth-update for patch/replace, auth-delete for delete).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateLogin, UserNotFound
from auth.models import Page, Principal
from auth.passwords import create_principal, guard_groups, guard_password, hash_password

if TYPE_CHECKING:
    from auth.context import AuthContext

logger = logging.getLogger("tokenauth.users")


def page_window(ctx: AuthContext, page: int = 0, page_size: int | None = None) -> tuple[int, int]:
    """Return (page, page_size) clamped to the configured bounds."""
    size = page_size if page_size is not None else ctx.config.default_page_size
    size = max(1, min(size, ctx.config.max_page_size))
    return max(0, page), size


def signup(
    ctx: AuthContext,
    login: str,
    raw_password: str,
    email: str,
    permissions: Iterable[str] = (),
    groups: Iterable[int] | None = None,
) -> int:
    """Register a new principal and return its ID."""
    return create_principal(ctx, login, raw_password, email, permissions, groups)


def get_user(ctx: AuthContext, user_id: int) -> Principal:
    principal = ctx.store.get_principal(user_id)
    if principal is None:
        raise UserNotFound()
    return principal


def list_users(ctx: AuthContext, page: int = 0, page_size: int | None = None) -> Page[Principal]:
    """Return one page of principals ordered by ID."""
    page, size = page_window(ctx, page, page_size)
    items, total = ctx.store.list_principals(page * size, size)
    return Page(items=items, total=total, page=page, page_size=size)


def patch_user(
    ctx: AuthContext,
    user_id: int,
    *,
    login: str | None = None,
    password: str | None = None,
    email: str | None = None,
    permissions: Iterable[str] | None = None,
    groups: Iterable[int] | None = None,
) -> None:
    """Change only the given fields of a principal.

    A new password goes through the policy check and is hashed; a new login
    must not belong to another principal.
    """
    if password is not None:
        guard_password(ctx, password)
    get_user(ctx, user_id)
    _write(ctx, user_id, login, password, email, permissions, groups)


def replace_user(
    ctx: AuthContext,
    user_id: int,
    login: str,
    raw_password: str,
    email: str,
    permissions: Iterable[str],
    groups: Iterable[int] | None = None,
) -> None:
    """Overwrite a principal. Memberships are only replaced when groups is given."""
    guard_password(ctx, raw_password)
    get_user(ctx, user_id)
    _write(ctx, user_id, login, raw_password, email, set(permissions), groups)


def delete_user(ctx: AuthContext, user_id: int) -> None:
    """Delete a principal with its tokens, memberships and pending codes."""
    if not ctx.store.delete_principal(user_id):
        raise UserNotFound()
    logger.info("Principal %d deleted", user_id)


def _write(
    ctx: AuthContext,
    user_id: int,
    login: str | None,
    password: str | None,
    email: str | None,
    permissions: Iterable[str] | None,
    groups: Iterable[int] | None,
) -> None:
    if login is not None and ctx.store.login_exists(login, exclude_id=user_id):
        raise DuplicateLogin()
    group_ids = set(groups) if groups is not None else None
    if group_ids:
        guard_groups(ctx, group_ids)
    hashed = hash_password(password, ctx.config.password_strength) if password is not None else None
    try:
        updated = ctx.store.update_principal(
            user_id,
            login=login,
            password_hash=hashed,
            email=email,
            permissions=set(permissions) if permissions is not None else None,
            groups=group_ids,
        )
    except IntegrityError as exc:
        raise DuplicateLogin() from exc
    if not updated:
        raise UserNotFound()
    logger.info("Principal %d updated", user_id)
