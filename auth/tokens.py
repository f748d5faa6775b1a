"""
auth/tokens.py -- JWT access/refresh token codec and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (user id), role, iat, exp, aud, iss and jti. Access and refresh
       tokens use disjoint audiences, so a refresh token can never pass the
       access check and vice versa.

  Expiry: zero leeway, checked against the codec's own clock rather than
       jose's whole-second one. iat is the issue time floored to a second
       and exp is iat + ttl, so a token lives at most ttl seconds. It is
       valid at exactly exp and rejected at any instant after it.

  Verification returns either TokenClaims or a TokenError member. Every
       error maps to the same 401 at the route layer, but each is logged under
       its own name so operators can tell replayed refresh tokens from
       tampering or plain expiry.

  jti: a random id per token. Nothing is stored for it by default; it is the
       handle the optional denylist (rotation / revocation) keys on.

Layer rule: no imports from api/ or kvstore/.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

logger = logging.getLogger("warden.auth")

_ALGORITHM = "HS256"

ACCESS_AUDIENCE = "warden-access"
REFRESH_AUDIENCE = "warden-refresh"


class TokenError(str, Enum):
    EXPIRED = "expired"
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    WRONG_AUDIENCE = "wrong_audience"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: str
    issued_at: int
    expires_at: int
    audience: str
    jti: str

    def remaining_seconds(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.expires_at - now))


class TokenCodec:
    """Issues and verifies signed, time-bounded tokens.

    Usage:
        codec = TokenCodec(secret_key, access_ttl=900, refresh_ttl=604800)
        token = codec.issue_access_token(user.id, user.role)
        claims = codec.verify(token, ACCESS_AUDIENCE)
        if isinstance(claims, TokenError): ...
    """

    def __init__(
        self,
        secret_key: str,
        access_ttl: int,
        refresh_ttl: int,
        issuer: str = "warden",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self.clock = clock

    def _encode(self, subject_id: str, role: str, audience: str, ttl: int) -> str:
        now = int(self.clock())
        payload = {
            "sub": subject_id,
            "role": role,
            "iat": now,
            "exp": now + ttl,
            "aud": audience,
            "iss": self.issuer,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def issue_access_token(self, subject_id: str, role: str, ttl: int | None = None) -> str:
        """Encode a short-lived access token. ttl overrides the configured lifetime."""
        return self._encode(subject_id, role, ACCESS_AUDIENCE, self.access_ttl if ttl is None else ttl)

    def issue_refresh_token(self, subject_id: str, role: str = "", ttl: int | None = None) -> str:
        return self._encode(subject_id, role, REFRESH_AUDIENCE, self.refresh_ttl if ttl is None else ttl)

    def verify(self, token: str, audience: str) -> TokenClaims | TokenError:
        """Check signature, expiry and audience. Never raises for a bad token."""
        try:
            jwt.get_unverified_header(token)
        except JWTError:
            return self._reject(TokenError.MALFORMED, audience)

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except JWTClaimsError:
            return self._reject(TokenError.WRONG_AUDIENCE, audience)
        except JWTError:
            return self._reject(TokenError.SIGNATURE_INVALID, audience)

        try:
            claims = TokenClaims(
                subject_id=str(payload["sub"]),
                role=str(payload.get("role", "")),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                audience=audience,
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError):
            return self._reject(TokenError.MALFORMED, audience)
        if self.clock() > claims.expires_at:
            return self._reject(TokenError.EXPIRED, audience)
        return claims

    @staticmethod
    def _reject(error: TokenError, audience: str) -> TokenError:
        logger.info("token rejected: %s (audience=%s)", error.value, audience)
        return error


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, access_token: str, access_ttl: int, refresh_token: str | None = None,
                     refresh_ttl: int = 0, secure: bool = False) -> None:
    """Write tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    The refresh cookie is path-scoped to the refresh endpoint so it is not
    sent on every API call.
    """
    response.set_cookie(
        "access_token",
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=access_ttl,
    )
    if refresh_token:
        response.set_cookie(
            "refresh_token",
            value=refresh_token,
            httponly=True,
            samesite="lax",
            secure=secure,
            max_age=refresh_ttl,
            path="/api/v1/auth",
        )


def clear_auth_cookies(response) -> None:
    response.delete_cookie("access_token")
    response.delete_cookie("refresh_token", path="/api/v1/auth")
