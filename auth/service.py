"""
auth/service.py -- Registration, login, verification, reset, refresh and logout workflows.

AuthService is the only place where business-rule ordering lives. It is
composed once at startup (build_auth_service) from explicitly passed
collaborators -- store, hasher, token codec, secret tokens, lockout guard,
denylist, notifier -- and stored on app.state by the API lifespan. Nothing is
looked up from a global registry.

Result convention:
  Every workflow returns either its success value or an AuthFailure. Expected
  failures are never raised. InternalAuthError is raised for storage or
  hashing faults and becomes a generic 500 at the API boundary.

Concurrency:
  bcrypt runs in a worker thread (asyncio.to_thread). Store calls run in a
  worker thread under a deadline (STORE_TIMEOUT_SECONDS). Notification runs
  under its own deadline and fails open. Admission checks fail closed.

Security:
  [C1] Login burns a bcrypt verify against a dummy digest when the email is
       unknown or the account inactive, and returns the same failure value
       for every credential problem -- no account enumeration by message or
       timing.
  Forgot-password returns nothing whether or not the email exists.
  Reset and verification tokens are single-use (see auth/secret_tokens.py).
  Credential updates are compare-and-swap on users.version.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    ADMISSION_UNAVAILABLE,
    CONCURRENT_UPDATE,
    INVALID_CREDENTIALS,
    INVALID_SECRET_TOKEN,
    UNAUTHORIZED,
    AdmissionUnavailable,
    AuthFailure,
    ErrorKind,
    InternalAuthError,
    validation_failure,
)
from auth.guard import LockoutGuard, TokenDenylist
from auth.models import (
    MAX_NAME_LENGTH,
    AuthResult,
    Role,
    SecretPurpose,
    TokenPair,
    User,
    UserEvent,
    activate,
    change_password_hash,
    change_role,
    deactivate,
    is_valid_email,
    mark_email_verified,
    normalize_email,
    record_login,
    update_profile,
)
from auth.notifier import Notifier, SmtpNotifier, redact_email
from auth.passwords import PasswordHasher, check_password_policy
from auth.roles import can_access, permits
from auth.secret_tokens import SecretTokenGenerator
from auth.store import UserStore
from auth.tokens import ACCESS_AUDIENCE, REFRESH_AUDIENCE, TokenClaims, TokenCodec, TokenError
from core.config import Settings
from kvstore.store import CounterStore

logger = logging.getLogger("warden.auth")
audit = logging.getLogger("warden.audit")

T = TypeVar("T")

_CAS_ATTEMPTS = 3


class AuthService:
    def __init__(
        self,
        store: UserStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        secret_tokens: SecretTokenGenerator,
        lockout: LockoutGuard,
        denylist: TokenDenylist,
        notifier: Notifier,
        *,
        store_timeout: float = 2.0,
        notify_timeout: float = 10.0,
        allow_unverified_login: bool = True,
        self_registration_enabled: bool = True,
        refresh_rotation_enabled: bool = False,
        token_revocation_enabled: bool = False,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.secret_tokens = secret_tokens
        self.lockout = lockout
        self.denylist = denylist
        self.notifier = notifier
        self.store_timeout = store_timeout
        self.notify_timeout = notify_timeout
        self.allow_unverified_login = allow_unverified_login
        self.self_registration_enabled = self_registration_enabled
        self.refresh_rotation_enabled = refresh_rotation_enabled
        self.token_revocation_enabled = token_revocation_enabled

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _io(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking store call in a worker thread under the store deadline.

        IntegrityError passes through untouched -- it is a business signal
        (duplicate email), not a fault.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.store_timeout)
        except IntegrityError:
            raise
        except asyncio.TimeoutError as exc:
            logger.error("store call %s timed out after %.1fs", getattr(fn, "__name__", fn), self.store_timeout)
            raise InternalAuthError("store timeout") from exc
        except SQLAlchemyError as exc:
            logger.error("store call %s failed: %s", getattr(fn, "__name__", fn), exc.__class__.__name__)
            raise InternalAuthError("store failure") from exc

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, digest: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, digest)

    async def _notify(self, send, user: User, token: str, what: str) -> None:
        try:
            await asyncio.wait_for(send(user, token), timeout=self.notify_timeout)
        except (asyncio.TimeoutError, OSError) as exc:
            # Fail open: the account change stands, the user can ask again.
            logger.warning("%s email to %s failed: %s", what, redact_email(user.email), exc.__class__.__name__)

    def _issue_tokens(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.codec.issue_access_token(user.id, user.role.value),
            refresh_token=self.codec.issue_refresh_token(user.id, user.role.value),
            expires_in=self.codec.access_ttl,
        )

    @staticmethod
    def _record(event: UserEvent) -> None:
        audit.info("%s user=%s %s", event.type, event.user_id, event.details or "")

    async def _save(self, user: User, expected_version: int) -> User | None:
        return await self._io(self.store.update_user, user, expected_version)

    async def _is_revoked(self, claims: TokenClaims) -> bool:
        return await self.denylist.is_revoked(claims.jti)

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    async def register(
        self, email: str, password: str, first_name: str, last_name: str, role: Role = Role.STAFF
    ) -> AuthResult | AuthFailure:
        """Create an unverified staff account, send the verification email, and log the user in.

        Self-registration never grants more than staff; higher roles are
        assigned by an administrator (change_user_role).
        """
        if not self.self_registration_enabled:
            return AuthFailure(ErrorKind.AUTHORIZATION, "registration_disabled", "Self-registration is disabled.")
        if role is not Role.STAFF:
            return AuthFailure(
                ErrorKind.AUTHORIZATION, "role_not_allowed", "Self-registration may only create staff accounts."
            )

        email = normalize_email(email)
        if not is_valid_email(email):
            return validation_failure("Please provide a valid email address")
        problem = check_password_policy(password)
        if problem:
            return validation_failure(problem, code="weak_password")
        first_name, last_name = first_name.strip(), last_name.strip()
        if not first_name or not last_name:
            return validation_failure("First and last name are required")
        if len(first_name) > MAX_NAME_LENGTH or len(last_name) > MAX_NAME_LENGTH:
            return validation_failure(f"Names must not exceed {MAX_NAME_LENGTH} characters")

        duplicate = AuthFailure(ErrorKind.CONFLICT, "email_taken", "Email already registered.")
        if await self._io(self.store.get_by_email, email) is not None:
            return duplicate

        user = User(
            email=email,
            password_hash=await self._hash(password),
            first_name=first_name,
            last_name=last_name,
            role=Role.STAFF,
        )
        try:
            user = await self._io(self.store.create_user, user)
        except IntegrityError:
            # Lost the race against a concurrent registration for the same email.
            return duplicate
        self._record(UserEvent("UserRegistered", user.id))

        token = await self._io(self.secret_tokens.generate, SecretPurpose.VERIFY_EMAIL, user.id)
        await self._notify(self.notifier.send_verification, user, token, "verification")

        if not self.allow_unverified_login:
            return AuthResult(user=user, tokens=None, message="Registration successful. Verify your email to log in.")
        return AuthResult(
            user=user,
            tokens=self._issue_tokens(user),
            message="Registration successful. Please check your email to verify your account.",
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, identity: str) -> AuthResult | AuthFailure:
        """Password login guarded by the per-client lockout."""
        try:
            admission = await self.lockout.check(identity)
        except AdmissionUnavailable:
            return ADMISSION_UNAVAILABLE
        if not admission.allowed:
            return AuthFailure(
                ErrorKind.RATE_LIMITED,
                "locked_out",
                "Too many failed attempts. Try again later.",
                retry_after=admission.retry_after,
            )

        email = normalize_email(email)
        user = await self._io(self.store.get_by_email, email) if is_valid_email(email) else None
        if user is None or not user.is_active:
            await asyncio.to_thread(self.hasher.burn, password)  # [C1]
            return await self._login_failed(identity, email)
        if not await self._verify(password, user.password_hash):
            return await self._login_failed(identity, email)

        try:
            await self.lockout.record_success(identity)
        except AdmissionUnavailable:
            logger.error("could not reset lockout counter after successful login")

        if not user.is_email_verified and not self.allow_unverified_login:
            return AuthFailure(ErrorKind.AUTHORIZATION, "email_not_verified", "Please verify your email before logging in.")

        user = await self._after_login(user, password)
        audit.info("login succeeded user=%s", user.id)
        return AuthResult(user=user, tokens=self._issue_tokens(user), message="Login successful")

    async def _login_failed(self, identity: str, email: str) -> AuthFailure:
        audit.info("login failed email=%s", redact_email(email))
        try:
            await self.lockout.record_failure(identity)
        except AdmissionUnavailable:
            logger.error("could not record failed login attempt")
        return INVALID_CREDENTIALS

    async def _after_login(self, user: User, password: str) -> User:
        """Stamp last_login and upgrade an outdated bcrypt cost. Best effort."""
        updated = record_login(user)
        if self.hasher.needs_rehash(user.password_hash):
            updated, _ = change_password_hash(updated, await self._hash(password))
        saved = await self._save(updated, user.version)
        if saved is None:
            logger.debug("last_login stamp skipped for user=%s (concurrent update)", user.id)
            return user
        return saved

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> User | AuthFailure:
        user_id = await self._io(self.secret_tokens.consume, token, SecretPurpose.VERIFY_EMAIL)
        if user_id is None:
            audit.info("email verification rejected: token not found or expired")
            return INVALID_SECRET_TOKEN

        for _ in range(_CAS_ATTEMPTS):
            user = await self._io(self.store.get_by_id, user_id)
            if user is None or not user.is_active:
                return INVALID_SECRET_TOKEN
            if user.is_email_verified:
                return user
            verified, event = mark_email_verified(user)
            saved = await self._save(verified, user.version)
            if saved is not None:
                self._record(event)
                return saved
        return CONCURRENT_UPDATE

    # ------------------------------------------------------------------
    # Forgot / reset password
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        """Send a reset link if the account exists. Says nothing either way."""
        email = normalize_email(email)
        if not is_valid_email(email):
            return None
        user = await self._io(self.store.get_by_email, email)
        if user is None or not user.is_active:
            audit.info("password reset requested for unknown or inactive email=%s", redact_email(email))
            return None
        token = await self._io(self.secret_tokens.generate, SecretPurpose.RESET_PASSWORD, user.id)
        audit.info("password reset requested user=%s", user.id)
        await self._notify(self.notifier.send_password_reset, user, token, "password reset")
        return None

    async def reset_password(self, token: str, new_password: str) -> User | AuthFailure:
        # Policy first, so a rejected password does not burn the token.
        problem = check_password_policy(new_password)
        if problem:
            return validation_failure(problem, code="weak_password")

        user_id = await self._io(self.secret_tokens.consume, token, SecretPurpose.RESET_PASSWORD)
        if user_id is None:
            audit.warning("password reset rejected: token not found, expired or already used")
            return INVALID_SECRET_TOKEN

        new_hash = await self._hash(new_password)
        for _ in range(_CAS_ATTEMPTS):
            user = await self._io(self.store.get_by_id, user_id)
            if user is None or not user.is_active:
                return INVALID_SECRET_TOKEN
            changed, event = change_password_hash(user, new_hash)
            saved = await self._save(changed, user.version)
            if saved is not None:
                await self._io(self.secret_tokens.invalidate, user_id, SecretPurpose.RESET_PASSWORD)
                self._record(event)
                return saved
        return CONCURRENT_UPDATE

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> User | AuthFailure:
        """Authenticated password change. Fails on a concurrent credential update."""
        problem = check_password_policy(new_password)
        if problem:
            return validation_failure(problem, code="weak_password")
        if current_password == new_password:
            return validation_failure("New password must differ from the current password")

        user = await self._io(self.store.get_by_id, user_id)
        if user is None or not user.is_active:
            return UNAUTHORIZED
        if not await self._verify(current_password, user.password_hash):
            audit.info("password change rejected: wrong current password user=%s", user.id)
            return validation_failure("Current password is incorrect", code="invalid_current_password")

        changed, event = change_password_hash(user, await self._hash(new_password))
        saved = await self._save(changed, user.version)
        if saved is None:
            return CONCURRENT_UPDATE
        await self._io(self.secret_tokens.invalidate, user.id, SecretPurpose.RESET_PASSWORD)
        self._record(event)
        return saved

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def authenticate(self, access_token: str) -> User | AuthFailure:
        """Resolve an access token to an active user."""
        claims = self.codec.verify(access_token, ACCESS_AUDIENCE)
        if isinstance(claims, TokenError):
            audit.info("access token rejected: %s", claims.value)
            return UNAUTHORIZED
        if self.token_revocation_enabled:
            try:
                if await self._is_revoked(claims):
                    audit.info("revoked access token presented jti=%s", claims.jti)
                    return UNAUTHORIZED
            except AdmissionUnavailable:
                return UNAUTHORIZED
        user = await self._io(self.store.get_by_id, claims.subject_id)
        if user is None or not user.is_active:
            return UNAUTHORIZED
        return user

    async def refresh(self, refresh_token: str) -> TokenPair | AuthFailure:
        claims = self.codec.verify(refresh_token, REFRESH_AUDIENCE)
        if isinstance(claims, TokenError):
            audit.warning("refresh token rejected: %s", claims.value)
            return UNAUTHORIZED
        if self.refresh_rotation_enabled or self.token_revocation_enabled:
            try:
                if await self._is_revoked(claims):
                    audit.warning("revoked refresh token replayed user=%s jti=%s", claims.subject_id, claims.jti)
                    return UNAUTHORIZED
            except AdmissionUnavailable:
                return ADMISSION_UNAVAILABLE

        user = await self._io(self.store.get_by_id, claims.subject_id)
        if user is None or not user.is_active:
            return UNAUTHORIZED

        # Role comes from the store, not the old token, so demotions apply on refresh.
        access = self.codec.issue_access_token(user.id, user.role.value)
        if not self.refresh_rotation_enabled:
            return TokenPair(access_token=access, refresh_token=None, expires_in=self.codec.access_ttl)

        try:
            await self.denylist.revoke(claims.jti, claims.remaining_seconds())
        except AdmissionUnavailable:
            return ADMISSION_UNAVAILABLE
        return TokenPair(
            access_token=access,
            refresh_token=self.codec.issue_refresh_token(user.id, user.role.value),
            expires_in=self.codec.access_ttl,
        )

    async def logout(self, access_token: str | None = None, refresh_token: str | None = None) -> None:
        """Stateless unless TOKEN_REVOCATION_ENABLED: then the presented tokens are denylisted."""
        if not self.token_revocation_enabled:
            return None
        for token, audience in ((access_token, ACCESS_AUDIENCE), (refresh_token, REFRESH_AUDIENCE)):
            if not token:
                continue
            claims = self.codec.verify(token, audience)
            if isinstance(claims, TokenError):
                continue
            try:
                await self.denylist.revoke(claims.jti, claims.remaining_seconds())
            except AdmissionUnavailable:
                logger.error("logout could not revoke %s token jti=%s", audience, claims.jti)
        return None

    # ------------------------------------------------------------------
    # User administration
    # ------------------------------------------------------------------

    async def get_user(self, actor: User, user_id: str) -> User | AuthFailure:
        """Self, or manager and above."""
        if not can_access(actor.id, actor.role, user_id, Role.MANAGER):
            return AuthFailure(ErrorKind.AUTHORIZATION, "forbidden", "Access denied.")
        user = await self._io(self.store.get_by_id, user_id)
        if user is None:
            return AuthFailure(ErrorKind.NOT_FOUND, "not_found", "User not found.")
        return user

    async def _admin_target(self, actor: User, user_id: str) -> User | AuthFailure:
        if not permits(actor.role, Role.ADMIN):
            return AuthFailure(ErrorKind.AUTHORIZATION, "forbidden", "Admin access required.")
        target = await self._io(self.store.get_by_id, user_id)
        if target is None:
            return AuthFailure(ErrorKind.NOT_FOUND, "not_found", "User not found.")
        return target

    async def _is_last_admin(self, target: User) -> bool:
        return target.role is Role.ADMIN and target.is_active and await self._io(self.store.count_active_admins) <= 1

    async def update_user(
        self,
        actor: User,
        user_id: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        role: Role | None = None,
        is_active: bool | None = None,
    ) -> User | AuthFailure:
        """Admin edit of an account's names, role and active flag.

        None leaves a field alone; naming no field at all is a validation
        failure. Fields already at the requested value are skipped, so a
        repeated request saves nothing and does not bump version. The whole
        edit is one compare-and-swap write.
        """
        target = await self._admin_target(actor, user_id)
        if isinstance(target, AuthFailure):
            return target
        if first_name is None and last_name is None and role is None and is_active is None:
            return validation_failure("No updates provided.", code="no_changes")
        if is_active is False and target.id == actor.id:
            return validation_failure("You cannot deactivate your own account.", code="self_deactivation")
        if is_active is False and await self._is_last_admin(target):
            return validation_failure("Cannot deactivate the last active admin account.", code="last_admin")
        if role is not None and role is not Role.ADMIN and await self._is_last_admin(target):
            return validation_failure("Cannot demote the last active admin account.", code="last_admin")

        updated, events = target, []
        names = {
            field: value.strip()
            for field, value in (("first_name", first_name), ("last_name", last_name))
            if value is not None and value.strip() != getattr(target, field)
        }
        try:
            if names:
                updated, event = update_profile(updated, **names)
                events.append(event)
            if role is not None and role is not updated.role:
                updated, event = change_role(updated, role)
                events.append(event)
            if is_active is not None and is_active != updated.is_active:
                updated, event = activate(updated) if is_active else deactivate(updated)
                events.append(event)
        except ValueError as exc:
            return validation_failure(str(exc))
        if not events:
            return target

        saved = await self._save(updated, target.version)
        if saved is None:
            return CONCURRENT_UPDATE
        for event in events:
            self._record(event)
        return saved

    async def change_user_role(self, actor: User, user_id: str, role: Role) -> User | AuthFailure:
        return await self.update_user(actor, user_id, role=role)

    async def deactivate_user(self, actor: User, user_id: str) -> User | AuthFailure:
        return await self.update_user(actor, user_id, is_active=False)

    async def _new_user(
        self, email: str, password: str, first_name: str, last_name: str, role: Role, *, verified: bool
    ) -> User | AuthFailure:
        email = normalize_email(email)
        if not is_valid_email(email):
            return validation_failure("Please provide a valid email address")
        problem = check_password_policy(password)
        if problem:
            return validation_failure(problem, code="weak_password")
        try:
            user = User(
                email=email,
                password_hash=await self._hash(password),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
                is_email_verified=verified,
            )
        except ValueError as exc:
            return validation_failure(str(exc))
        try:
            return await self._io(self.store.create_user, user)
        except IntegrityError:
            return AuthFailure(ErrorKind.CONFLICT, "email_taken", "Email already registered.")

    async def create_user(
        self, actor: User, email: str, password: str, first_name: str, last_name: str, role: Role = Role.STAFF
    ) -> User | AuthFailure:
        """Admin-provisioned account of any role.

        The account starts unverified and gets the same verification email as
        a self-registered one; a delivery failure does not undo the creation.
        """
        if not permits(actor.role, Role.ADMIN):
            return AuthFailure(ErrorKind.AUTHORIZATION, "forbidden", "Admin access required.")
        user = await self._new_user(email, password, first_name, last_name, role, verified=False)
        if isinstance(user, AuthFailure):
            return user
        self._record(UserEvent("UserCreated", user.id, details={"role": role.value, "by": actor.id}))

        token = await self._io(self.secret_tokens.generate, SecretPurpose.VERIFY_EMAIL, user.id)
        await self._notify(self.notifier.send_verification, user, token, "verification")
        return user

    async def create_admin(self, email: str, password: str, first_name: str, last_name: str) -> User | AuthFailure:
        """Operator bootstrap: create a verified admin. Not reachable over HTTP."""
        user = await self._new_user(email, password, first_name, last_name, Role.ADMIN, verified=True)
        if isinstance(user, AuthFailure):
            return user
        self._record(UserEvent("AdminCreated", user.id))
        return user

    async def purge_expired_tokens(self) -> int:
        return await self._io(self.secret_tokens.purge_expired)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def build_auth_service(
    settings: Settings,
    store: UserStore,
    counters: CounterStore,
    notifier: Notifier | None = None,
) -> AuthService:
    """Wire an AuthService from settings and the two shared stores."""
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    codec = TokenCodec(
        settings.secret_key,
        access_ttl=settings.access_token_expire_seconds,
        refresh_ttl=settings.refresh_token_expire_seconds,
        issuer=settings.token_issuer,
    )
    secret_tokens = SecretTokenGenerator(
        store,
        settings.secret_key,
        ttls={
            SecretPurpose.VERIFY_EMAIL: settings.verification_token_ttl_seconds,
            SecretPurpose.RESET_PASSWORD: settings.reset_token_ttl_seconds,
        },
    )
    lockout = LockoutGuard(
        counters,
        threshold=settings.lockout_threshold,
        window_seconds=settings.lockout_window_seconds,
        timeout=settings.store_timeout_seconds,
    )
    if notifier is None:
        notifier = SmtpNotifier(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
            timeout=settings.notify_timeout_seconds,
        )
    return AuthService(
        store,
        hasher,
        codec,
        secret_tokens,
        lockout,
        TokenDenylist(counters, timeout=settings.store_timeout_seconds),
        notifier,
        store_timeout=settings.store_timeout_seconds,
        notify_timeout=settings.notify_timeout_seconds,
        allow_unverified_login=settings.allow_unverified_login,
        self_registration_enabled=settings.self_registration_enabled,
        refresh_rotation_enabled=settings.refresh_rotation_enabled,
        token_revocation_enabled=settings.token_revocation_enabled,
    )
