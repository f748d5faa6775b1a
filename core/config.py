"""
core/config.py -- Warden settings, read once from the environment.

Every tunable of the auth core (token lifetimes, bcrypt cost, lockout and
rate windows, store deadlines, registration policy, SMTP) is a field on
Settings. Nothing else in the tree reads os.environ; callers take
get_settings() or receive a Settings instance from the API lifespan.

Loading:
  pydantic-settings maps each field to the upper-cased env var of the same
  name (lockout_threshold -> LOCKOUT_THRESHOLD) and also reads a local .env.
  get_settings() is wrapped in lru_cache, so the environment is parsed on the
  first call only. Tests derive variants with settings.model_copy(update=...).

Validation:
  Field bounds (gt=0, 4 <= bcrypt_rounds <= 31) reject nonsense windows and
  costs. Two model validators run after loading:

  [M6] SECRET_KEY signs JWTs and keys the HMAC digests of verification and
       reset tokens. Anything under 32 characters is refused.

  [M7] Without DEBUG=true a missing SECRET_KEY stops startup. With DEBUG a
       throwaway key is generated -- tokens then die with the process, and
       two instances would not accept each other's tokens.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or kvstore/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("warden.config")


class Settings(BaseSettings):
    """Every Warden tunable. Defaults are the production values except SECRET_KEY."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = ""  # empty -> sqlite file next to auth/store.py
    # Empty -> in-process counters. Set to redis://... when more than one
    # instance serves traffic so lockout and rate windows are shared.
    redis_url: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "warden"
    access_token_expire_seconds: int = Field(default=900, gt=0)
    refresh_token_expire_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    refresh_rotation_enabled: bool = False
    token_revocation_enabled: bool = False
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Credentials and secret tokens
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    verification_token_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    reset_token_ttl_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Brute-force defense
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, gt=0)
    lockout_window_seconds: int = Field(default=15 * 60, gt=0)
    rate_limit_requests: int = Field(default=100, gt=0)
    rate_limit_window_seconds: int = Field(default=15 * 60, gt=0)
    # slowapi limit string for endpoints that send email
    email_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Deadlines for external calls
    # ------------------------------------------------------------------

    store_timeout_seconds: float = Field(default=2.0, gt=0)
    notify_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # Registration policy
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    # Accounts may log in before verifying their email. See DESIGN.md.
    allow_unverified_login: bool = True

    # ------------------------------------------------------------------
    # Notification (SMTP). Empty host -> emails are logged, not sent.
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from: str = ""
    email_from_name: str = "Warden"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    trusted_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        """Refresh tokens must outlive access tokens, otherwise refresh is useless."""
        if self.refresh_token_expire_seconds <= self.access_token_expire_seconds:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must exceed ACCESS_TOKEN_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Parse the environment on first call; every later call returns the same Settings."""
    return Settings()
