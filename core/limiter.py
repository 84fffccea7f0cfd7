"""
core/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
web/routes.py applies per-route limits with @limiter.limit(). It lives in
core/ because both layers need it and neither may import the other.

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
