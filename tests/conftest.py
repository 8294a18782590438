"""
tests/conftest.py -- Shared test fixtures for tokenauth.

This module provides:
  - FakeClock / clock: a controllable clock, so expiry tests never sleep
  - Outbox: a capturing sender that records every (contact, code) it is given
  - store: an isolated in-memory AuthStore per test
  - ctx: an AuthContext wired to store, clock and two outboxes
  - make_user: helper that creates a principal through the real create path
  - api_client: TestClient with an admin bearer token for API integration tests

bcrypt runs at its minimum cost (4) everywhere in the tests; the cost factor
does not change any behaviour under test, only the time it takes.

Plain sqlite:///:memory: works across TestClient worker threads because
AuthStore puts in-memory databases on a single shared connection.

The DEBUG env var must be set before any auth/core import so get_settings()
picks the logging sender instead of warning about a missing webhook.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# Set before any auth/core import: get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SIGNIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.context import AuthConfig, AuthContext
from auth.passwords import create_principal
from auth.store import AuthStore
from auth.tokens import issue_or_refresh

TEST_PASSWORD = "correct-horse"
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class Outbox:
    """Sender that records deliveries instead of sending them."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def __call__(self, contact: str, code: str) -> None:
        self.messages.append((contact, code))

    @property
    def last_code(self) -> str:
        return self.messages[-1][1]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signin_outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def restore_outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def config(signin_outbox: Outbox, restore_outbox: Outbox) -> AuthConfig:
    return AuthConfig(
        single_use_sender=signin_outbox,
        restore_sender=restore_outbox,
        password_strength=4,
    )


@pytest.fixture
def ctx(config: AuthConfig, store: AuthStore, clock: FakeClock) -> AuthContext:
    return AuthContext(config=config, store=store, clock=clock)


@pytest.fixture
def make_user(ctx: AuthContext):
    """Return a factory: make_user("alice", permissions={"read"}) -> user ID."""

    def factory(login: str, permissions=(), groups=None, password: str = TEST_PASSWORD) -> int:
        return create_principal(ctx, login, password, f"{login}@example.com", permissions, groups)

    return factory


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_ctx: AuthContext):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built AuthContext into app.state so TestClient routes see an
    isolated in-memory store instead of the on-disk default database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = auth_ctx
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The user holds the admin permission, so the token passes every
    permission check. Codes sent during the module are recorded on
    client.app.state.auth.config.single_use_sender / restore_sender.
    """
    auth_store = AuthStore("sqlite:///:memory:")
    auth_ctx = AuthContext(
        config=AuthConfig(single_use_sender=Outbox(), restore_sender=Outbox(), password_strength=4),
        store=auth_store,
    )
    uid = create_principal(auth_ctx, "testadmin", TEST_PASSWORD, "admin@example.com", {"admin"})
    token = issue_or_refresh(auth_ctx, uid, 3600)

    app.router.lifespan_context = _patch_lifespan(auth_ctx)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    limiter.enabled = True
    auth_store.close()
