"""Unit tests for auth/groups.py -- permission group administration."""

from __future__ import annotations

import pytest

from auth.errors import GroupNotFound, UserNotFound
from auth.groups import create_group, delete_group, get_group, list_groups, patch_group, replace_group
from auth.users import get_user


def test_create_and_get(ctx, make_user):
    uid = make_user("alice")
    gid = create_group(ctx, "editors", ["edit", "publish"], [uid])
    group = get_group(ctx, gid)
    assert group.name == "editors"
    assert group.permissions == {"edit", "publish"}
    assert group.users == {uid}
    assert get_user(ctx, uid).groups == {gid}


def test_create_with_unknown_member(ctx):
    with pytest.raises(UserNotFound):
        create_group(ctx, "editors", ["edit"], [999])


def test_get_unknown(ctx):
    with pytest.raises(GroupNotFound):
        get_group(ctx, 999)


def test_patch_only_given_fields(ctx, make_user):
    uid = make_user("alice")
    gid = create_group(ctx, "editors", ["edit"], [uid])
    patch_group(ctx, gid, name="writers")
    group = get_group(ctx, gid)
    assert group.name == "writers"
    assert group.permissions == {"edit"}
    assert group.users == {uid}


def test_replace(ctx, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    gid = create_group(ctx, "editors", ["edit"], [alice])
    replace_group(ctx, gid, "reviewers", ["review"], [bob])
    group = get_group(ctx, gid)
    assert (group.name, group.permissions, group.users) == ("reviewers", {"review"}, {bob})
    assert get_user(ctx, alice).group_permissions == set()
    assert get_user(ctx, bob).group_permissions == {"review"}


def test_patch_unknown(ctx):
    with pytest.raises(GroupNotFound):
        patch_group(ctx, 999, name="nobody")


def test_delete_removes_grants(ctx, make_user):
    uid = make_user("alice")
    gid = create_group(ctx, "editors", ["edit"], [uid])
    delete_group(ctx, gid)
    with pytest.raises(GroupNotFound):
        get_group(ctx, gid)
    principal = get_user(ctx, uid)
    assert principal.groups == set()
    assert principal.all_permissions == set()
    with pytest.raises(GroupNotFound):
        delete_group(ctx, gid)


def test_list(ctx):
    ids = [create_group(ctx, f"group{i}") for i in range(3)]
    page = list_groups(ctx, page=0, page_size=2)
    assert [g.id for g in page.items] == ids[:2]
    assert page.total == 3
    assert page.pages == 2
