"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register     -- create a "cliente" account; 201
  POST /api/v1/auth/login        -- password login; access token in body, refresh cookie set
  POST /api/v1/auth/refresh      -- rotate the refresh cookie; new access token
  POST /api/v1/auth/logout       -- end the cookie's session; cookie cleared
  POST /api/v1/auth/logout-all   -- end every session of the caller (requires auth)
  GET  /api/v1/auth/me           -- claims of the presented access token (requires auth)

Security:
  [H2] Login and refresh are rate-limited inside SessionService (per IP and
       per identifier, adaptive Retry-After). The global slowapi ceiling
       still applies on top.
  [C1] Credential checks go through PasswordVerifier, which equalizes timing
       for unknown identifiers.
  [M5] Cache-Control: no-store on every response that carries a credential
       or a credential error.

Failures are raised as AuthError subclasses and rendered by the handler in
api/main.py, which also clears the refresh cookie on refresh-token errors.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    UserResponse,
)
from auth.dependencies import (
    get_client_context,
    get_current_claims,
    get_session_service,
    get_settings_from_app,
)
from auth.models import AccessClaims, ClientContext, IssuedSession, User
from auth.sessions import SessionService
from auth.tokens import clear_refresh_cookie, set_refresh_cookie
from core.config import Settings

# Auth policy:
# - POST /api/v1/auth/register:    public
# - POST /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:     refresh cookie only
# - POST /api/v1/auth/logout:      refresh cookie only
# - POST /api/v1/auth/logout-all:  requires Bearer access token (get_current_claims)
# - GET  /api/v1/auth/me:          requires Bearer access token (get_current_claims)
router = APIRouter()


def _user_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, username=user.username, role=user.role)


def _session_response(session: IssuedSession, settings: Settings) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=session.expires_in,
            user=_user_response(session.user),
        ).model_dump(),
    )
    set_refresh_cookie(resp, session.refresh_token, settings, max_age=settings.refresh_token_ttl_days * 86400)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _presented_refresh_token(request: Request, settings: Settings) -> str | None:
    return request.cookies.get(settings.refresh_cookie_name)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(body: RegisterRequest, sessions: SessionService = Depends(get_session_service)) -> UserResponse:
    """Create a self-service account. The role is always the default one.

    An address that is already registered answers 409 "user_exists".
    """
    return _user_response(sessions.register(body.email, body.password))


@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    body: LoginRequest,
    client: ClientContext = Depends(get_client_context),
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Authenticate with e-mail and password; start a new session.

    Wrong e-mail and wrong password return the same "bad_credentials" error.
    The attempt that reaches the lockout threshold answers 423, as does every
    attempt while the identifier stays locked.
    """
    session = sessions.login(body.email, body.password, client)
    return _session_response(session, get_settings_from_app(request))


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(
    request: Request,
    client: ClientContext = Depends(get_client_context),
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie.

    Replaying a cookie that was already rotated revokes the whole session.
    """
    settings = get_settings_from_app(request)
    session = sessions.refresh(_presented_refresh_token(request, settings), client)
    return _session_response(session, settings)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    client: ClientContext = Depends(get_client_context),
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """End the session that owns the refresh cookie, then clear the cookie."""
    settings = get_settings_from_app(request)
    sessions.logout(_presented_refresh_token(request, settings), client)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_refresh_cookie(resp, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    claims: AccessClaims = Depends(get_current_claims),
    client: ClientContext = Depends(get_client_context),
    sessions: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Revoke every session of the caller on every device.

    Access tokens already handed out keep working until they expire.
    """
    revoked = sessions.logout_all(claims, client)
    resp = JSONResponse(content=LogoutAllResponse(message="Logged out everywhere.", revoked=revoked).model_dump())
    clear_refresh_cookie(resp, get_settings_from_app(request))
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity carried by the access token. No database access."""
    return MeResponse(
        user_id=claims.sub,
        role=claims.role,
        session_id=claims.sid,
        issued_at=claims.iat,
        expires_at=claims.exp,
    )
