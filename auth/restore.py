"""
auth/restore.py -- Password restore with a one-time code.

Two phases, no bearer token involved:
  start_restore(user_id)                    -- send (or resend) a restore code
  complete_restore(user_id, code, password) -- set the new password

Ordering in complete_restore():
  1. the code must be unused and unexpired      (CodeMismatch)
  2. the new password must pass the policy      (WeakPassword)
  3. password update and code consumption happen in one store transaction

A weak password therefore leaves the code usable for another try, and two
racing completions cannot both change the password: the second one's
conditional consume matches no row and raises CodeMismatch.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.delivery import deliver
from auth.errors import CodeMismatch, UserNotFound
from auth.models import Principal, RestoreCode
from auth.passwords import guard_password, hash_password

if TYPE_CHECKING:
    from auth.context import AuthContext

logger = logging.getLogger("tokenauth.restore")


def _guard_user(ctx: AuthContext, user_id: int) -> Principal:
    principal = ctx.store.get_principal(user_id)
    if principal is None:
        raise UserNotFound()
    return principal


def start_restore(ctx: AuthContext, user_id: int) -> None:
    """Deliver a restore code for user_id.

    An outstanding unused, unexpired code is sent again instead of minting a
    new one, so repeated requests never leave several valid codes behind. Its
    expiry is not extended.
    """
    principal = _guard_user(ctx, user_id)
    cfg = ctx.config
    now = ctx.now()
    outstanding = ctx.store.outstanding_restore_code(principal.id, now)
    if outstanding is not None:
        code = outstanding.value
        logger.info("Restore code resent for principal %d", principal.id)
    else:
        code = cfg.restore_generator()
        ctx.store.add_restore_code(RestoreCode(value=code, user_id=principal.id, expire=now + cfg.restore_expire))
        logger.info("Restore code issued for principal %d", principal.id)
    deliver(cfg.restore_sender, cfg.contact_resolver(principal), code)


def complete_restore(ctx: AuthContext, user_id: int, code: str, new_raw_password: str) -> None:
    """Check the restore code, then replace the password and consume the code."""
    principal = _guard_user(ctx, user_id)
    now = ctx.now()
    if ctx.store.find_restore_code(principal.id, code, now) is None:
        logger.info("Restore code rejected for principal %d", principal.id)
        raise CodeMismatch()
    guard_password(ctx, new_raw_password)
    hashed = hash_password(new_raw_password, ctx.config.password_strength)
    if not ctx.store.redeem_restore_code(principal.id, code, now, hashed):
        # Lost a race with a concurrent completion of the same code.
        raise CodeMismatch()
    logger.info("Password restored for principal %d", principal.id)
