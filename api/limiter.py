"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules under api/routes/v1/ (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limit strings come from Settings so they can be tuned per deployment. slowapi
accepts a zero-argument callable as the limit value and evaluates it per
request, so a changed setting takes effect after get_settings.cache_clear().
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def status_limit() -> str:
    """Limit for routes that change a status."""
    return get_settings().status_rate_limit


def read_limit() -> str:
    return get_settings().read_rate_limit


def import_limit() -> str:
    return get_settings().import_rate_limit
