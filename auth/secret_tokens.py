"""
auth/secret_tokens.py -- Single-use secrets for email verification and password reset.

secrets.token_hex(32) gives 256 bits of entropy, so a fast keyed digest is
enough: HMAC-SHA256(SECRET_KEY, token) is stored and the plaintext is handed
out exactly once. bcrypt's intentional slowness would only slow down
verification here without adding any strength.

Lifetimes: verification tokens live 24h, reset tokens 1h (a reset token is
worth more to an attacker than a verification token).

Consumption is atomic and destructive. The store flips consumed_at with one
conditional UPDATE, and only the caller whose UPDATE changed a row gets the
user id back -- a second consumer, concurrent or not, gets None.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable

from auth.models import SecretPurpose
from auth.store import UserStore

logger = logging.getLogger("warden.auth")

DEFAULT_TTLS: dict[SecretPurpose, int] = {
    SecretPurpose.VERIFY_EMAIL: 24 * 3600,
    SecretPurpose.RESET_PASSWORD: 3600,
}


class SecretTokenGenerator:
    """Issues and consumes verification / reset tokens.

    Usage:
        gen = SecretTokenGenerator(store, secret_key)
        plaintext = gen.generate(SecretPurpose.RESET_PASSWORD, user.id)
        user_id = gen.consume(plaintext, SecretPurpose.RESET_PASSWORD)  # None if not found / expired / used
    """

    def __init__(
        self,
        store: UserStore,
        secret_key: str,
        ttls: dict[SecretPurpose, int] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._secret_key = secret_key.encode("utf-8")
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.clock = clock

    def digest(self, plaintext: str) -> str:
        return hmac.new(self._secret_key, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate(self, purpose: SecretPurpose, user_id: str, ttl: int | None = None) -> str:
        """Create a token, supersede any live one of the same purpose, return the plaintext."""
        plaintext = secrets.token_hex(32)
        lifetime = self.ttls[purpose] if ttl is None else ttl
        self.store.replace_secret_token(user_id, purpose.value, self.digest(plaintext), self.clock() + lifetime)
        logger.debug("issued %s token user=%s ttl=%ds", purpose.value, user_id, lifetime)
        return plaintext

    def consume(self, plaintext: str, purpose: SecretPurpose) -> str | None:
        """Return the owning user id once; None if unknown, expired or already used."""
        if not plaintext:
            return None
        return self.store.consume_secret_token(self.digest(plaintext), purpose.value, self.clock())

    def invalidate(self, user_id: str, purpose: SecretPurpose) -> int:
        return self.store.delete_secret_tokens(user_id, purpose.value)

    def purge_expired(self) -> int:
        return self.store.purge_secret_tokens(self.clock())
