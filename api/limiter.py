"""
api/limiter.py -- The one slowapi Limiter shared by the app and the signin routes.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/v1/auth.py registers per-route limits on it. Limits live in the
instance's in-memory storage, so a second Limiter would count separately and
never trip.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def signin_rate_limit() -> str:
    """Limit applied to every signin endpoint, read from SIGNIN_RATE_LIMIT."""
    return get_settings().signin_rate_limit
