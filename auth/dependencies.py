"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential carriers are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. JWT cookie ("access_token") -- set by login for browser clients.

Both converge on AuthService.authenticate(), which checks signature, expiry,
audience, the optional denylist, and that the account is still active.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_role(role) wraps get_current_user() and raises HTTP 403 below role.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthFailure
from auth.models import Role, User
from auth.roles import permits


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get("access_token")


async def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via Bearer header or cookie.

    Returns the authenticated User on success, None on any failure.
    Never raises for a bad token -- callers that need a hard 401 should use
    get_current_user().
    """
    token = bearer_token(request)
    if not token:
        return None
    result = await request.app.state.auth.authenticate(token)
    if isinstance(result, AuthFailure):
        return None
    return result


async def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = await try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_role(role: Role):
    """Dependency factory: authenticated user holding at least role.

        @router.get("/reports")
        async def route(user: User = Depends(require_role(Role.MANAGER))): ...
    """

    async def dependency(request: Request) -> User:
        user = await get_current_user(request)
        if not permits(user.role, role):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{role.value.capitalize()} access required."},
            )
        return user

    return dependency


require_admin = require_role(Role.ADMIN)
