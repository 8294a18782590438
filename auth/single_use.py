"""
auth/single_use.py -- Signin with a code of single usage.

Flow:
  1. start_signin(login): a code is generated, stored with its expiry and
     sent to the principal's contact (SMS or email, whatever the configured
     sender does).
  2. complete_signin(login, code): the code is consumed and a bearer token
     is returned, through the same issue_or_refresh() the password signin
     uses.

A code works once. Consumption is a conditional UPDATE in the store, so two
concurrent redemptions of one code cannot both succeed. Missing, expired and
already-used codes all raise the same CodeMismatch.

Unknown logins raise UserNotFound, which tells the caller whether a login
exists. Set CONCEAL_UNKNOWN_LOGINS=true to make start_signin() silently do
nothing and complete_signin() raise CodeMismatch instead.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.delivery import deliver
from auth.errors import CodeMismatch, UserNotFound
from auth.models import Principal, SingleUseCode
from auth.tokens import issue_or_refresh

if TYPE_CHECKING:
    from auth.context import AuthContext

logger = logging.getLogger("tokenauth.single_use")


def _principal_for_login(ctx: AuthContext, login: str) -> Principal | None:
    principal = ctx.store.get_principal_by_login(login)
    if principal is None and not ctx.config.conceal_unknown_logins:
        raise UserNotFound()
    return principal


def start_signin(ctx: AuthContext, login: str) -> None:
    """Generate, store and deliver a single-use signin code."""
    principal = _principal_for_login(ctx, login)
    if principal is None:
        logger.info("Code signin requested for unknown login")
        return
    cfg = ctx.config
    code = cfg.single_use_generator()
    expire = ctx.now() + cfg.single_use_code_expire
    ctx.store.add_single_use_code(SingleUseCode(value=code, user_id=principal.id, expire=expire))
    deliver(cfg.single_use_sender, cfg.contact_resolver(principal), code)
    logger.info("Single-use code issued for principal %d", principal.id)


def complete_signin(ctx: AuthContext, login: str, code: str, requested_lifetime: int | None = None) -> str:
    """Redeem a single-use code and return a bearer token."""
    principal = _principal_for_login(ctx, login)
    if principal is None:
        raise CodeMismatch()
    if not ctx.store.consume_single_use_code(principal.id, code, ctx.now()):
        logger.info("Single-use code rejected for principal %d", principal.id)
        raise CodeMismatch()
    return issue_or_refresh(ctx, principal.id, requested_lifetime)
