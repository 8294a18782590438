"""
auth/context.py -- Runtime configuration and the per-call operation context.

Every core operation takes an AuthContext as its first argument:

    ctx = AuthContext(config=AuthConfig.from_settings(get_settings()), store=AuthStore())
    token = issue_or_refresh(ctx, user_id)

AuthConfig is frozen: it is built once at startup from core.config.Settings
plus the callbacks (code generators, senders, password validator, contact
resolver) and then only read. Tests build their own with overrides instead of
patching module globals.

AuthContext.now() is the single clock every expiry comparison goes through.
Operations call it once and pass the value down, so one request sees one
"now".

Layer rule: no imports from api/.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.delivery import build_sender
from auth.passwords import min_length_validator

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import AuthStore
    from core.config import Settings

Sender = Callable[[str, str], None]


def generate_token() -> str:
    """256 bits from the OS CSPRNG, URL-safe so it fits an Authorization header."""
    return secrets.token_urlsafe(32)


def generate_single_use_code() -> str:
    """10 hex characters (40 bits). Short enough to type from an SMS."""
    return secrets.token_hex(5)


def generate_restore_code() -> str:
    return secrets.token_urlsafe(24)


def email_contact(principal: Principal) -> str:
    return principal.email


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuthConfig:
    """Everything the core needs to know besides the store.

    maximum_expire is None when lifetimes are uncapped.
    """

    single_use_sender: Sender
    restore_sender: Sender
    default_expire: timedelta = timedelta(minutes=10)
    maximum_expire: timedelta | None = None
    single_use_code_expire: timedelta = timedelta(minutes=30)
    restore_expire: timedelta = timedelta(minutes=30)
    password_strength: int = 12
    admin_permission: str = "admin"
    conceal_unknown_logins: bool = False
    default_page_size: int = 50
    max_page_size: int = 500
    password_validator: Callable[[str], str | None] = min_length_validator(6)
    token_generator: Callable[[], str] = generate_token
    single_use_generator: Callable[[], str] = generate_single_use_code
    restore_generator: Callable[[], str] = generate_restore_code
    contact_resolver: Callable[[Principal], str] = email_contact

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> AuthConfig:
        """Build the runtime config from environment-driven Settings.

        Keyword overrides win over settings, which is how tests and embedding
        applications plug in their own senders or validators.
        """
        sender = build_sender(settings)
        config = cls(
            single_use_sender=sender,
            restore_sender=sender,
            default_expire=timedelta(seconds=settings.default_expire_seconds),
            maximum_expire=(
                timedelta(seconds=settings.maximum_expire_seconds) if settings.maximum_expire_seconds else None
            ),
            single_use_code_expire=timedelta(seconds=settings.single_use_code_expire_seconds),
            restore_expire=timedelta(seconds=settings.restore_expire_seconds),
            password_strength=settings.password_strength,
            admin_permission=settings.admin_permission,
            conceal_unknown_logins=settings.conceal_unknown_logins,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
            password_validator=min_length_validator(settings.password_min_length),
        )
        return replace(config, **overrides) if overrides else config


@dataclass(frozen=True)
class AuthContext:
    config: AuthConfig
    store: AuthStore
    clock: Callable[[], datetime] = utc_now

    def now(self) -> datetime:
        return self.clock()
