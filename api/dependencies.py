"""
api/dependencies.py -- FastAPI Depends() helpers for token authentication.

The boundary reads the bearer token from the Authorization header and hands
it, together with the endpoint's required permission set, to
auth.tokens.resolve(). Nothing here decides anything: missing, unknown,
expired and under-privileged tokens all surface as the typed errors resolve()
raises, and api/main.py maps those to 401/403.

Usage:
    @router.get("/auth/users")
    def list_users(ctx: AuthContext = Depends(get_context),
                   caller: Principal = Depends(require(AUTH_INFO_PERM))): ...
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.context import AuthContext
from auth.models import Principal
from auth.tokens import resolve


def get_context(request: Request) -> AuthContext:
    """Return the AuthContext built by the lifespan."""
    return request.app.state.auth


def bearer_token(request: Request) -> str | None:
    """Extract the token from an 'Authorization: Bearer <token>' header."""
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def require(*permissions: str) -> Callable[[Request], Principal]:
    """Build a dependency that resolves the caller's token against permissions.

    require() with no arguments only demands a valid token.
    """
    required = frozenset(permissions)

    def dependency(request: Request) -> Principal:
        return resolve(get_context(request), bearer_token(request), required)

    return dependency
