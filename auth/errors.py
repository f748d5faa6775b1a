"""
auth/errors.py -- Typed failure values and the few real exceptions.

Expected outcomes (bad credentials, expired token, lockout, duplicate email)
are returned as AuthFailure values, not raised. The API layer translates them
into HTTP responses in exactly one place (api/errors.py).

Exceptions are reserved for faults the caller cannot handle as a business
outcome: InternalAuthError (hashing or storage failure) and
AdmissionUnavailable (the shared counter store could not answer in time).

Layer rule: no imports from api/ or kvstore/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMITED = "rate_limited"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.INTERNAL: 500,
    ErrorKind.UNAVAILABLE: 503,
}


@dataclass(frozen=True)
class AuthFailure:
    """An expected, caller-visible failure.

    code is a stable machine-readable identifier ("bad_credentials",
    "locked_out", ...); message is safe to show to the end user.
    retry_after is set only for RATE_LIMITED failures.
    """

    kind: ErrorKind
    code: str
    message: str
    retry_after: int | None = None

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


def validation_failure(message: str, code: str = "validation_error") -> AuthFailure:
    return AuthFailure(ErrorKind.VALIDATION, code, message)


# One instance shared by every credential/token failure so the external
# response is byte-identical whatever the internal cause was.
INVALID_CREDENTIALS = AuthFailure(ErrorKind.AUTHENTICATION, "bad_credentials", "Invalid email or password.")
UNAUTHORIZED = AuthFailure(ErrorKind.AUTHENTICATION, "unauthorized", "Authentication required.")
INVALID_SECRET_TOKEN = AuthFailure(ErrorKind.VALIDATION, "invalid_token", "Invalid or expired token.")
CONCURRENT_UPDATE = AuthFailure(
    ErrorKind.CONFLICT, "concurrent_update", "The account was modified by another request. Try again."
)
# Lockout, rate-limit or denylist state could not be read in time. Deny.
ADMISSION_UNAVAILABLE = AuthFailure(
    ErrorKind.UNAVAILABLE, "admission_unavailable", "Authentication is temporarily unavailable. Try again later."
)


class InternalAuthError(Exception):
    """Hashing or storage failure. Surfaces as a generic 500."""


class AdmissionUnavailable(Exception):
    """The lockout or rate-limit state could not be read or written.

    Callers must deny the request when they see this -- admission checks fail
    closed.
    """
