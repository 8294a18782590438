"""Unit tests for auth/guard.py -- permission evaluation.

check() is pure, so most cases build Principal snapshots directly. The group
cases go through the store to show that memberships feed the snapshot.
"""

from __future__ import annotations

import pytest

from auth.errors import Forbidden
from auth.groups import create_group, patch_group
from auth.guard import check, guard
from auth.models import Principal
from auth.users import get_user


def _principal(permissions=(), group_permissions=()) -> Principal:
    return Principal(
        login="p",
        password_hash="x",
        email="p@example.com",
        id=1,
        permissions=set(permissions),
        group_permissions=set(group_permissions),
    )


@pytest.mark.parametrize(
    "direct, via_group, required, expected",
    [
        ((), (), set(), True),
        (("read",), (), {"read"}, True),
        (("read",), (), {"read", "write"}, False),
        (("read",), ("write",), {"read", "write"}, True),
        (("admin",), (), {"anything", "else"}, True),
        ((), ("admin",), {"anything"}, True),
        (("Read",), (), {"read"}, False),
    ],
)
def test_check(direct, via_group, required, expected):
    assert check(_principal(direct, via_group), required) is expected


def test_custom_admin_tag():
    p = _principal({"root"})
    assert check(p, {"x"}, admin_permission="root")
    assert not check(p, {"x"})


def test_guard_names_only_missing_tags():
    p = _principal({"read", "secret-grant"})
    with pytest.raises(Forbidden) as exc_info:
        guard(p, {"read", "write", "delete"})
    message = str(exc_info.value)
    assert "delete, write" in message
    assert "secret-grant" not in message


def test_group_grant_and_revocation(ctx, make_user):
    uid = make_user("alice")
    gid = create_group(ctx, "writers", {"write"}, [uid])
    assert check(get_user(ctx, uid), {"write"})

    patch_group(ctx, gid, users=[])
    assert not check(get_user(ctx, uid), {"write"})


def test_groups_do_not_nest(ctx, make_user):
    uid = make_user("alice")
    create_group(ctx, "outer", {"outer-perm"}, [uid])
    create_group(ctx, "inner", {"inner-perm"}, [])
    assert check(get_user(ctx, uid), {"outer-perm"})
    assert not check(get_user(ctx, uid), {"inner-perm"})
