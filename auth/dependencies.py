"""
auth/dependencies.py -- FastAPI Depends() helpers for the session engine.

get_session_service() returns the SessionService wired in the app lifespan.
get_client_context() extracts the caller's IP, user agent and rate-limit
bypass grant. get_current_claims() requires a Bearer access token.

Access tokens are accepted only from the Authorization header. The refresh
cookie is never treated as proof of identity for protected routes.

Layer rule: may import from fastapi (part of the DI system) and core/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Unauthenticated
from auth.models import AccessClaims, ClientContext
from auth.ratelimit import bypass_granted
from auth.sessions import SessionService
from core.config import Settings


def get_settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def get_session_service(request: Request) -> SessionService:
    return request.app.state.sessions


def get_client_context(request: Request) -> ClientContext:
    """Build the ClientContext for this request.

    The bypass header is only honored outside production; Settings already
    blanks the key in production [B1], this is the second check.
    """
    settings = get_settings_from_app(request)
    bypass = False
    if not settings.is_production:
        bypass = bypass_granted(
            request.headers.get(settings.rate_limit_bypass_header),
            settings.rate_limit_bypass_key,
        )
    return ClientContext(
        ip=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("User-Agent", "")[:512],
        bypass_rate_limit=bypass,
    )


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid Bearer access token. Raises Unauthenticated (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise Unauthenticated()
    return get_session_service(request).who_am_i(token)
