"""
API request and response models for the SitePass REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

The refresh credential never appears in any model here: it travels only in
the httpOnly cookie.
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

# Shape check only.
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Only the e-mail is trimmed; the password is compared byte for byte."""

    email: Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=255)]
    password: str = Field(min_length=1, max_length=255)


class RegisterRequest(BaseModel):
    """Self-registration. New accounts always get the default role."""

    email: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    ]
    password: str = Field(min_length=8, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: int
    username: str
    role: str


class LoginResponse(BaseModel):
    """Body of a successful login or refresh. The refresh token is in the cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    role: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(BaseModel):
    message: str
    revoked: int


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
