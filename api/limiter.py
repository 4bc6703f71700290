"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

RATE_LIMIT_ENABLED=false turns every limit into a no-op (the test suite does
this so repeated logins from the TestClient address are never throttled).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=_settings.rate_limit_enabled,
)

LOGIN_LIMIT = _settings.login_rate_limit
AUTH_LIMIT = _settings.auth_rate_limit
