"""
auth/passwords.py -- Password hashing and the password policy.

bcrypt is used directly rather than through passlib: passlib's internal
wrap-bug detection builds a password longer than 72 bytes, which current
bcrypt releases reject outright. bcrypt digests are self-describing
("$2b$<cost>$<salt+hash>"), so the work factor a digest was produced with can
be read back and compared with the configured one (needs_rehash).

Inputs longer than 72 UTF-8 bytes are refused by check_password_policy() so
bcrypt never sees them.

Plaintext passwords are never logged or returned from this module.
"""

from __future__ import annotations

import logging
import re

import bcrypt

from auth.errors import InternalAuthError

logger = logging.getLogger("warden.auth")

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_BYTES = 72  # bcrypt input limit

_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
# Compared case-insensitively, after the character-class rules have passed.
_COMMON_PASSWORDS = frozenset(
    {"password1!", "passw0rd!", "p@ssw0rd", "p@ssword1", "welcome1!", "qwerty123!", "admin123!", "letmein1!"}
)


def check_password_policy(password: str) -> str | None:
    """Return a user-facing problem description, or None if the password is acceptable."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return f"Password must not exceed {MAX_PASSWORD_BYTES} bytes"
    if not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if not re.search(r"\d", password):
        return "Password must contain at least one number"
    if not _SPECIAL_RE.search(password):
        return "Password must contain at least one special character"
    if password.lower() in _COMMON_PASSWORDS:
        return "Password is too common. Please choose a stronger password"
    return None


class PasswordHasher:
    """bcrypt wrapper with a configurable cost factor.

    All methods are synchronous and CPU-bound; the service layer runs them
    in a worker thread so the event loop keeps serving other clients.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization dummy [C1]. Verified against when the email is
        # unknown so response time does not reveal whether an account exists.
        self.dummy_hash = self.hash("warden_timing_dummy")

    def hash(self, plain: str) -> str:
        try:
            return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        except (ValueError, TypeError) as exc:
            logger.error("bcrypt hashing failed: %s", exc.__class__.__name__)
            raise InternalAuthError("password hashing failed") from exc

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. A mismatch or bad digest is just False."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            logger.warning("stored password digest could not be parsed")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        """True if hashed was produced with a different cost than configured."""
        parts = hashed.split("$")
        if len(parts) < 4 or not parts[2].isdigit():
            return True
        return int(parts[2]) != self.rounds

    def burn(self, plain: str) -> None:
        """Spend one verify() worth of CPU against the dummy digest."""
        self.verify(plain, self.dummy_hash)
