"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.

This limiter only caps the email-sending endpoints (register,
forgot-password). The global per-client request limit and the login lockout
live in auth/guard.py, because they must fail closed and share state with the
rest of the auth core.

Counters live in Redis when REDIS_URL is set, otherwise in process memory.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_settings.redis_url or "memory://",
)

EMAIL_RATE_LIMIT = _settings.email_rate_limit
