"""
api/limiter.py -- Shared slowapi limiter: the application-wide per-IP ceiling.

SlowAPIMiddleware applies default_limits to every route not marked exempt.
This is a coarse flood guard only. Login and refresh have their own per-IP
and per-identifier limits with adaptive Retry-After in auth/ratelimit.py.

Using a single shared instance ensures all routes share the same in-memory
counter store.

BypassAwareSlowAPIMiddleware skips the ceiling for requests carrying the
rate-limit bypass key, outside production only [B1].
"""

import math
import time

from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.requests import Request

from auth.ratelimit import bypass_granted
from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().global_rate_limit],
    storage_uri="memory://",
)


class BypassAwareSlowAPIMiddleware(SlowAPIMiddleware):
    async def dispatch(self, request: Request, call_next):
        settings = getattr(request.app.state, "settings", None) or get_settings()
        if not settings.is_production and bypass_granted(
            request.headers.get(settings.rate_limit_bypass_header),
            settings.rate_limit_bypass_key,
        ):
            return await call_next(request)
        return await super().dispatch(request, call_next)


def seconds_until_reset(request: Request, fallback: int) -> int:
    """Whole seconds until the ceiling that rejected request resets, at least 1.

    slowapi records the limit it evaluated in request.state.view_rate_limit;
    fallback is used when that is missing.
    """
    current = getattr(request.state, "view_rate_limit", None)
    if not current:
        return max(1, fallback)
    active = request.app.state.limiter
    reset_at, _remaining = active.limiter.get_window_stats(current[0], *current[1])
    return max(1, math.ceil(reset_at - time.time()))
