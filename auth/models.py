"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: immutable value objects plus pure transition functions. A User is a
frozen dataclass validated in __post_init__; every lifecycle change (verify,
password change, role change, deactivation) is a module-level function that
returns a NEW User together with a UserEvent record for the audit log. Stores
and the service layer do the persistence work.

Layer rule: no imports from api/ or kvstore/.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAX_EMAIL_LENGTH = 254
MAX_NAME_LENGTH = 100


class Role(str, Enum):
    """Permission level. Ordering lives in auth/roles.py, not here."""

    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"


class SecretPurpose(str, Enum):
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_user_id() -> str:
    """Opaque user id. Never derived from the email so ids leak nothing."""
    return uuid.uuid4().hex


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return len(email) <= MAX_EMAIL_LENGTH and bool(_EMAIL_RE.match(email))


@dataclass(frozen=True)
class User:
    """An identity record.

    email is always stored lower-cased; uniqueness is the store's job.
    password_hash is a bcrypt string and is replaced wholesale on change.
    version is bumped by the store on every write and is the compare-and-swap
    token for conditional updates.
    """

    email: str
    password_hash: str
    first_name: str
    last_name: str
    role: Role = Role.STAFF
    id: str = field(default_factory=new_user_id)
    is_active: bool = True
    is_email_verified: bool = False
    version: int = 1
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    last_login: str | None = None

    def __post_init__(self) -> None:
        validate_user(self)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def validate_user(user: User) -> None:
    """Raise ValueError if the record breaks an entity invariant."""
    if not is_valid_email(user.email) or user.email != normalize_email(user.email):
        raise ValueError("Invalid email format")
    if not isinstance(user.role, Role):
        raise ValueError(f"Invalid role. Must be one of: {', '.join(r.value for r in Role)}")
    for label, value in (("First name", user.first_name), ("Last name", user.last_name)):
        if not value or not value.strip():
            raise ValueError(f"{label} is required")
        if len(value) > MAX_NAME_LENGTH:
            raise ValueError(f"{label} must not exceed {MAX_NAME_LENGTH} characters")
    if not user.password_hash:
        raise ValueError("Password hash is required")


@dataclass(frozen=True)
class UserEvent:
    """Audit record produced by a lifecycle transition."""

    type: str
    user_id: str
    occurred_at: str = field(default_factory=_now_iso)
    details: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transitions -- pure, each returns (new_user, event)
# ---------------------------------------------------------------------------


def mark_email_verified(user: User) -> tuple[User, UserEvent]:
    if user.is_email_verified:
        raise ValueError("User email is already verified")
    updated = replace(user, is_email_verified=True, updated_at=_now_iso())
    return updated, UserEvent("UserEmailVerified", user.id)


def change_password_hash(user: User, password_hash: str) -> tuple[User, UserEvent]:
    updated = replace(user, password_hash=password_hash, updated_at=_now_iso())
    return updated, UserEvent("UserPasswordChanged", user.id)


def change_role(user: User, role: Role) -> tuple[User, UserEvent]:
    updated = replace(user, role=role, updated_at=_now_iso())
    return updated, UserEvent("UserRoleChanged", user.id, details={"from": user.role.value, "to": role.value})


def deactivate(user: User) -> tuple[User, UserEvent]:
    if not user.is_active:
        raise ValueError("User is already deactivated")
    updated = replace(user, is_active=False, updated_at=_now_iso())
    return updated, UserEvent("UserDeactivated", user.id)


def activate(user: User) -> tuple[User, UserEvent]:
    updated = replace(user, is_active=True, updated_at=_now_iso())
    return updated, UserEvent("UserActivated", user.id)


def update_profile(user: User, first_name: str | None = None, last_name: str | None = None) -> tuple[User, UserEvent]:
    changes = {k: v for k, v in (("first_name", first_name), ("last_name", last_name)) if v is not None}
    updated = replace(user, **changes, updated_at=_now_iso())
    return updated, UserEvent("UserProfileUpdated", user.id, details=changes)


def record_login(user: User) -> User:
    """Stamp last_login. Not audited as a domain event -- the audit log has its own entry."""
    return replace(user, last_login=_now_iso())


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh tokens returned by login, register and refresh."""

    access_token: str
    refresh_token: str | None
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful register or login."""

    user: User
    tokens: TokenPair | None
    message: str = ""
