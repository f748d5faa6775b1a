"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register         -- create a staff account; 201 + tokens
  POST /api/v1/auth/login            -- password login; tokens + cookies
  POST /api/v1/auth/verify-email     -- consume a verification token
  POST /api/v1/auth/forgot-password  -- always 200; emails a reset link if the account exists
  POST /api/v1/auth/reset-password   -- consume a reset token and set a new password
  POST /api/v1/auth/refresh          -- new access token from a refresh token (body or cookie)
  POST /api/v1/auth/logout           -- clears cookies; 200
  GET  /api/v1/auth/me               -- current user profile (requires auth)
  GET  /api/v1/auth/status           -- {is_authenticated, user}; never 401
  POST /api/v1/auth/change-password  -- requires auth + current password

Security:
  [H2] register and forgot-password are rate-limited per IP (EMAIL_RATE_LIMIT)
       so they cannot be used to flood an inbox.
  [C1] Login failures are one generic 401 whatever the cause -- timing
       equalization lives in AuthService.login(), never inline it here.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Failures are translated by api.errors.raise_for_failure() only.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import raise_for_failure
from api.limiter import EMAIL_RATE_LIMIT, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    StatusResponse,
    TokenRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import bearer_token, get_current_user, try_get_current_user
from auth.errors import UNAUTHORIZED
from auth.models import AuthResult, TokenPair, User
from auth.service import AuthService
from auth.tokens import clear_auth_cookies, set_auth_cookies

# Auth policy:
# - POST /api/v1/auth/register, login, verify-email, forgot-password,
#   reset-password, refresh, logout:  public
# - GET  /api/v1/auth/status:          optional auth (try_get_current_user)
# - GET  /api/v1/auth/me:              requires auth (get_current_user)
# - POST /api/v1/auth/change-password: requires auth (get_current_user)
router = APIRouter()


def _client_identity(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _token_response(request: Request, status_code: int, content: dict, tokens: TokenPair | None) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    if tokens is not None:
        service: AuthService = request.app.state.auth
        set_auth_cookies(
            resp,
            tokens.access_token,
            tokens.expires_in,
            refresh_token=tokens.refresh_token,
            refresh_ttl=service.codec.refresh_ttl,
            secure=request.app.state.settings.secure_cookies,
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_response(request: Request, status_code: int, result: AuthResult) -> JSONResponse:
    content = AuthResponse(
        user=UserResponse.from_user(result.user),
        tokens=TokenResponse.from_pair(result.tokens) if result.tokens else None,
        message=result.message,
    ).model_dump(mode="json")
    return _token_response(request, status_code, content, result.tokens)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(EMAIL_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an unverified staff account and email a verification link."""
    service: AuthService = request.app.state.auth
    result = raise_for_failure(
        await service.register(body.email, body.password, body.first_name, body.last_name, role=body.role)
    )
    return _auth_response(request, 201, result)


@router.post("/auth/login", response_model=AuthResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return tokens and set cookies.

    Returns the same generic error for unknown email, wrong password and
    inactive account ("bad_credentials") to avoid leaking account existence.
    After LOCKOUT_THRESHOLD failures from one client, returns 429 with
    retryAfter until the lockout window has passed.
    """
    service: AuthService = request.app.state.auth
    result = await service.login(body.email, body.password, _client_identity(request))
    return _auth_response(request, 200, raise_for_failure(result))


@router.post("/auth/verify-email", response_model=MessageResponse)
async def verify_email(request: Request, body: TokenRequest) -> MessageResponse:
    service: AuthService = request.app.state.auth
    raise_for_failure(await service.verify_email(body.token))
    return MessageResponse(message="Email verified successfully.")


@limiter.limit(EMAIL_RATE_LIMIT)  # [H2]
@router.post("/auth/forgot-password", response_model=MessageResponse)
async def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Always 200 with the same message, whether or not the account exists."""
    service: AuthService = request.app.state.auth
    await service.forgot_password(body.email)
    return MessageResponse(message="If an account exists for that email, a password reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    service: AuthService = request.app.state.auth
    raise_for_failure(await service.reset_password(body.token, body.new_password))
    return MessageResponse(message="Password has been reset. You can now log in with your new password.")


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token (JSON body or refresh_token cookie) for a new access token."""
    service: AuthService = request.app.state.auth
    token = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    if not token:
        raise_for_failure(UNAUTHORIZED)
    pair = raise_for_failure(await service.refresh(token))
    return _token_response(request, 200, TokenResponse.from_pair(pair).model_dump(), pair)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Clear the auth cookies. With TOKEN_REVOCATION_ENABLED the tokens are also denylisted."""
    service: AuthService = request.app.state.auth
    refresh_token = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    await service.logout(access_token=bearer_token(request), refresh_token=refresh_token)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/status", response_model=StatusResponse)
async def status(request: Request) -> StatusResponse:
    """Report whether the request carries valid credentials. Never returns 401."""
    user = await try_get_current_user(request)
    return StatusResponse(
        is_authenticated=user is not None,
        user=UserResponse.from_user(user) if user else None,
        setup_required=getattr(request.app.state, "setup_required", False),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.post("/auth/change-password", response_model=MessageResponse)
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    service: AuthService = request.app.state.auth
    raise_for_failure(await service.change_password(current_user.id, body.current_password, body.new_password))
    return MessageResponse(message="Password changed successfully.")
