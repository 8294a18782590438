"""
auth/passwords.py -- Credential Manager: hashing, verification, password policy.

Security design decisions:
  bcrypt, used directly. The stored hash is self-describing
      ("$2b$<cost>$<22-char salt><31-char hash>"), so the algorithm tag, the
      random salt and the cost factor all travel with it. The cost comes from
      AuthConfig.password_strength; raising it later only affects new hashes,
      old ones keep verifying.

  Timing equalization. verify_credentials() always runs one bcrypt check,
      against a dummy hash when the login is unknown, so response time does
      not reveal whether a login exists. Both failure paths raise the same
      InvalidCredentials.

  Policy first. The configured validator runs before any hashing so a
      rejected password never reaches bcrypt or the store.

bcrypt only looks at the first 72 bytes of a password; both hashing and
verification cut the encoded password there, which newer bcrypt releases
require. The API layer caps password fields at 255 characters.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateLogin, GroupNotFound, InvalidCredentials, UserNotFound, WeakPassword
from auth.models import Principal

if TYPE_CHECKING:
    from auth.context import AuthContext

logger = logging.getLogger("tokenauth.passwords")

_BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, strength: int = 12) -> str:
    """Return a salted bcrypt hash of plain with the given cost factor."""
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=strength)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=8)
def _dummy_hash(strength: int) -> str:
    # Same cost as real hashes, so the unknown-login path takes as long.
    return hash_password("tokenauth_timing_dummy", strength)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def min_length_validator(min_length: int) -> Callable[[str], str | None]:
    """Build the default password validator: a minimum length check."""

    def validate(raw: str) -> str | None:
        if len(raw) < min_length:
            return f"Password must be at least {min_length} characters long."
        return None

    return validate


def validate_password_policy(ctx: AuthContext, raw_password: str) -> str | None:
    """Return the validator's rejection reason, or None if the password is acceptable."""
    return ctx.config.password_validator(raw_password)


def guard_password(ctx: AuthContext, raw_password: str) -> None:
    """Raise WeakPassword if the configured validator rejects raw_password."""
    reason = validate_password_policy(ctx, raw_password)
    if reason is not None:
        raise WeakPassword(reason)


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


def guard_groups(ctx: AuthContext, group_ids: Iterable[int]) -> None:
    """Raise GroupNotFound if any of group_ids does not exist."""
    wanted = set(group_ids)
    missing = wanted - ctx.store.existing_group_ids(wanted)
    if missing:
        raise GroupNotFound(f"User group not found: {min(missing)}.")


def create_principal(
    ctx: AuthContext,
    login: str,
    raw_password: str,
    email: str,
    permissions: Iterable[str] = (),
    groups: Iterable[int] | None = None,
) -> int:
    """Create a principal and return its ID.

    Raises DuplicateLogin if the login is taken, WeakPassword if the policy
    rejects the password and GroupNotFound for unknown group IDs. The raw
    password is hashed before anything is written.
    """
    if ctx.store.login_exists(login):
        raise DuplicateLogin()
    guard_password(ctx, raw_password)
    group_ids = set(groups or ())
    guard_groups(ctx, group_ids)
    principal = Principal(
        login=login,
        password_hash=hash_password(raw_password, ctx.config.password_strength),
        email=email,
        permissions=set(permissions),
        groups=group_ids,
    )
    try:
        user_id = ctx.store.create_principal(principal)
    except IntegrityError as exc:
        # A concurrent signup took the login between the check and the insert.
        raise DuplicateLogin() from exc
    logger.info("Principal %d created", user_id)
    return user_id


def verify_credentials(ctx: AuthContext, login: str, raw_password: str) -> Principal:
    """Return the principal if login and password match.

    Unknown login and wrong password both raise InvalidCredentials with the
    same message, after the same amount of bcrypt work.
    """
    principal = ctx.store.get_principal_by_login(login)
    if principal is None:
        verify_password(raw_password, _dummy_hash(ctx.config.password_strength))
        raise InvalidCredentials()
    if not verify_password(raw_password, principal.password_hash):
        logger.info("Password signin rejected for principal %d", principal.id)
        raise InvalidCredentials()
    return principal


def set_password(ctx: AuthContext, principal: Principal, raw_password: str) -> None:
    """Rehash and persist a new password for principal.

    Does not run the policy check; callers guard_password() first.
    """
    hashed = hash_password(raw_password, ctx.config.password_strength)
    if not ctx.store.update_principal(principal.id, password_hash=hashed):
        raise UserNotFound()
    principal.password_hash = hashed
