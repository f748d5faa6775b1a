"""
api/routes/v1/users.py -- User lookup and administration endpoints.

Routes:
  POST  /api/v1/users                  -- admin only, creates an unverified account
  GET   /api/v1/users/{id}             -- self, or manager and above
  PATCH /api/v1/users/{id}             -- admin only, names / role / is_active
  PATCH /api/v1/users/{id}/role        -- admin only
  POST  /api/v1/users/{id}/deactivate  -- admin only

Security:
  [M4] Deactivation (either route) blocks self-deactivation and removing the last active
       admin (no recovery path without DB access). Demoting the last admin is
       blocked for the same reason.
  The ownership-or-role rule for GET lives in AuthService.get_user(), which
  answers 403 before looking the id up, so staff cannot discover which ids exist.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.errors import raise_for_failure
from api.models import CreateUserRequest, RoleUpdate, UserResponse, UserUpdate
from auth.dependencies import get_current_user, require_admin
from auth.models import User
from auth.service import AuthService

router = APIRouter()


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    service: AuthService = request.app.state.auth
    user = raise_for_failure(await service.get_user(current_user, user_id))
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}/role", response_model=UserResponse)
async def update_role(
    request: Request,
    user_id: str,
    body: RoleUpdate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Change a user's role. Admin only."""
    service: AuthService = request.app.state.auth
    user = raise_for_failure(await service.change_user_role(current_user, user_id, body.role))
    return UserResponse.from_user(user)


@router.post("/users/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Deactivate an account. Admin only; idempotent for already inactive users [M4]."""
    service: AuthService = request.app.state.auth
    user = raise_for_failure(await service.deactivate_user(current_user, user_id))
    return UserResponse.from_user(user)


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(
    request: Request,
    body: CreateUserRequest,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Provision an account of any role. Admin only; the new user must still verify their email."""
    service: AuthService = request.app.state.auth
    user = raise_for_failure(
        await service.create_user(
            current_user, body.email, body.password, body.first_name, body.last_name, body.role
        )
    )
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Edit names, role or active flag. Admin only; an empty body is a 400 (no_changes)."""
    service: AuthService = request.app.state.auth
    user = raise_for_failure(
        await service.update_user(
            current_user,
            user_id,
            first_name=body.first_name,
            last_name=body.last_name,
            role=body.role,
            is_active=body.is_active,
        )
    )
    return UserResponse.from_user(user)
