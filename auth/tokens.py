"""
auth/tokens.py -- Token Lifecycle Manager: issue, refresh, resolve, touch, revoke.

Security design decisions:
  Opaque tokens. A token is 256 random bits from the configured generator
      (secrets.token_urlsafe by default). It carries no claims; everything is
      looked up in the store, which is what makes instant revocation possible.

  One active token per principal. issue_or_refresh() extends the existing
      active token instead of minting a second one. The store performs the
      existence check and the write in one locked transaction.

  Lifetime cap. calc_expire() clamps the requested lifetime to
      AuthConfig.maximum_expire when one is configured, whatever the client
      asks for.

  Lazy expiry. Nothing sweeps expired tokens. resolve() compares against the
      request's single "now"; a token whose expire is at or before now is
      expired. revoke() therefore just sets expire to now.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from auth.errors import AuthRequired, IntegrityViolation, InvalidToken, TokenExpired
from auth.guard import guard
from auth.models import BearerToken, Principal

if TYPE_CHECKING:
    from auth.context import AuthContext

logger = logging.getLogger("tokenauth.tokens")


def calc_expire(ctx: AuthContext, requested_seconds: int | None = None, now: datetime | None = None) -> datetime:
    """Return the expiry timestamp for a token issued or touched at now.

    effective = min(requested or default, maximum) if a maximum is configured,
    otherwise requested or default. A requested lifetime that is not positive
    falls back to the default.
    """
    cfg = ctx.config
    if requested_seconds is not None and requested_seconds > 0:
        lifetime = timedelta(seconds=requested_seconds)
    else:
        lifetime = cfg.default_expire
    if cfg.maximum_expire is not None:
        lifetime = min(lifetime, cfg.maximum_expire)
    return (now or ctx.now()) + lifetime


def issue_or_refresh(ctx: AuthContext, user_id: int, requested_lifetime: int | None = None) -> str:
    """Return the principal's active token with a fresh expiry, or a new token.

    Reissuing inside the active window returns the same value.
    """
    now = ctx.now()
    expire = calc_expire(ctx, requested_lifetime, now)
    value, created = ctx.store.issue_or_refresh_token(user_id, expire, now, ctx.config.token_generator)
    if created:
        logger.info("Token issued for principal %d (expires %s)", user_id, expire.isoformat())
    else:
        logger.info("Token refreshed for principal %d (expires %s)", user_id, expire.isoformat())
    return value


def resolve_token(
    ctx: AuthContext,
    token_value: str | None,
    required: Iterable[str] = frozenset(),
    now: datetime | None = None,
) -> tuple[BearerToken, Principal]:
    """Validate a presented token and return its record and owner.

    Failure order: AuthRequired (no value), InvalidToken (unknown value),
    TokenExpired (now at or past expire), IntegrityViolation (owner row is
    gone), Forbidden (guard rejects).
    """
    if not token_value:
        raise AuthRequired()
    now = now or ctx.now()
    token = ctx.store.get_token(token_value)
    if token is None:
        raise InvalidToken()
    if not token.is_active(now):
        raise TokenExpired()
    principal = ctx.store.get_principal(token.user_id)
    if principal is None:
        # Principal deletion removes its tokens in the same transaction, so
        # reaching this means the store was modified behind our back.
        logger.error("Token %d references missing principal %d", token.id, token.user_id)
        raise IntegrityViolation(f"User of token {token.id} doesn't exist.")
    guard(principal, required, ctx.config.admin_permission)
    return token, principal


def resolve(ctx: AuthContext, token_value: str | None, required: Iterable[str] = frozenset()) -> Principal:
    """Return the principal owning token_value if it satisfies required."""
    _token, principal = resolve_token(ctx, token_value, required)
    return principal


def touch(ctx: AuthContext, token_value: str | None, requested_lifetime: int | None = None) -> None:
    """Keep-alive: extend a valid token's expiry. Idempotent.

    The write only lands if the token is still active, so a signout or expiry
    that slips in after resolution cannot be undone here.
    """
    now = ctx.now()
    token, _principal = resolve_token(ctx, token_value, now=now)
    if not ctx.store.extend_active_token(token.id, calc_expire(ctx, requested_lifetime, now), now):
        raise TokenExpired()


def revoke(ctx: AuthContext, token_value: str | None) -> None:
    """Expire a valid token immediately (signout)."""
    now = ctx.now()
    token, _principal = resolve_token(ctx, token_value, now=now)
    if not ctx.store.extend_active_token(token.id, now, now):
        raise TokenExpired()
    logger.info("Token revoked for principal %d", token.user_id)


def token_owner(ctx: AuthContext, token_value: str | None) -> int:
    """Return the ID of the principal owning a valid token."""
    token, _principal = resolve_token(ctx, token_value)
    return token.user_id


def token_info(ctx: AuthContext, token_value: str | None) -> Principal:
    """Return the principal owning a valid token, no permissions required."""
    return resolve(ctx, token_value)
