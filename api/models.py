"""
API request and response models for Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Passwords are never whitespace-stripped -- a trailing space is part of the
secret. Shape checks here are coarse (length caps against oversized bodies);
the password policy and name rules are enforced by AuthService so every entry
point gets the same answer.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Role, TokenPair, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: Role = Role.STAFF


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    email is a plain string, not EmailStr: a malformed address must get the
    same generic 401 as a wrong password.
    """

    email: str = Field(max_length=254)
    password: str = Field(max_length=128)


class TokenRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify-email."""

    token: str = Field(min_length=1, max_length=256)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(max_length=254)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /logout.

    Optional -- browser clients send the refresh_token cookie instead.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class RoleUpdate(BaseModel):
    """Request body for PATCH /api/v1/users/{id}/role."""

    role: Role


class UserUpdate(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Omitted fields are left alone."""

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class CreateUserRequest(BaseModel):
    """Request body for POST /api/v1/users (admin provisioning)."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: Role = Role.STAFF


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never carries the password digest."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    is_active: bool
    is_email_verified: bool
    created_at: str
    updated_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login=user.last_login,
        )


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/login and /refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )


class AuthResponse(BaseModel):
    """Response for POST /api/v1/auth/register and /login.

    tokens is None when the account must verify its email before logging in.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    tokens: Optional[TokenResponse] = None
    message: str = ""


class StatusResponse(BaseModel):
    """Response for GET /api/v1/auth/status -- works with or without credentials."""

    model_config = ConfigDict(frozen=True)

    is_authenticated: bool
    user: Optional[UserResponse] = None
    setup_required: bool = False  # no accounts existed when the server started


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    retry_after is serialized as "retryAfter" and only present on 429s.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = Field(default=None, serialization_alias="retryAfter")


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
    counters: str = "ok"
