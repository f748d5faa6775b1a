"""
tests/conftest.py -- Shared test fixtures for Warden unit and integration tests.

This module provides:
  - RecordingNotifier: captures verification / reset tokens instead of emailing
  - user_store / counters / notifier / service: isolated per-test components
  - make_service(): AuthService with settings overrides
  - api_client: TestClient with an admin JWT for API integration tests
  - fresh_api: function-scoped variant for tests that trip lockout or limits

Design: each store is a SQLite file under pytest's tmp_path (WAL mode).
TestClient runs sync work in a thread pool and AuthService pushes every store
call to a worker thread, so the DB must be shareable across connections --
a plain :memory: database would give each thread a blank schema.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
BCRYPT_ROUNDS=4 keeps hashing fast. The global request and email limits are
raised so whole modules can share one client identity ("testclient").
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from pathlib import Path

# CRITICAL: Set env before any auth/core import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_REQUESTS", "10000")
os.environ.setdefault("EMAIL_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.guard import RateLimiter
from auth.models import Role, User
from auth.passwords import PasswordHasher
from auth.service import AuthService, build_auth_service
from auth.store import UserStore
from core.config import Settings, get_settings
from kvstore.store import MemoryCounterStore

STRONG_PASSWORD = "Abc12345!"


# ---------------------------------------------------------------------------
# Notifier double
# ---------------------------------------------------------------------------


class RecordingNotifier:
    """Notifier that keeps (kind, email, token) tuples for assertions."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send_verification(self, user: User, token: str) -> None:
        self.sent.append(("verify", user.email, token))

    async def send_password_reset(self, user: User, token: str) -> None:
        self.sent.append(("reset", user.email, token))

    def last_token(self, kind: str, email: str) -> str:
        for sent_kind, sent_email, token in reversed(self.sent):
            if sent_kind == kind and sent_email == email:
                return token
        raise AssertionError(f"no {kind} email sent to {email}")


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


def _sqlite_url(directory: Path) -> str:
    return f"sqlite:///{directory / 'warden_test.db'}"


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def user_store(tmp_path: Path) -> Generator[UserStore, None, None]:
    store = UserStore(db_url=_sqlite_url(tmp_path))
    yield store
    store.close()


@pytest.fixture
def counters() -> MemoryCounterStore:
    return MemoryCounterStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_service(settings, user_store, counters, notifier):
    """Factory: AuthService over the per-test stores, with optional settings overrides.

        service = make_service(allow_unverified_login=False)
    """

    def _make(**overrides) -> AuthService:
        return build_auth_service(settings.model_copy(update=overrides), user_store, counters, notifier)

    return _make


@pytest.fixture
def service(make_service) -> AuthService:
    return make_service()


def make_user(store: UserStore, email: str, role: Role = Role.STAFF, password: str = STRONG_PASSWORD, **fields) -> User:
    """Insert a user directly, bypassing registration."""
    user = User(
        email=email,
        password_hash=PasswordHasher(rounds=4).hash(password),
        first_name=fields.pop("first_name", "Test"),
        last_name=fields.pop("last_name", "User"),
        role=role,
        **fields,
    )
    return store.create_user(user)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, user_store: UserStore, counters: MemoryCounterStore, auth: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test components into app.state so TestClient routes see
    isolated stores and a recording notifier. The purge_task is a
    long-sleeping coroutine (a real asyncio.Task is required; lifespan
    shutdown calls .cancel() on it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.counters = counters
        app.state.auth = auth
        app.state.setup_required = False
        app.state.rate_limiter = RateLimiter(
            counters,
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


def _start_client(db_dir: Path, **overrides):
    settings = get_settings().model_copy(update=overrides)
    user_store = UserStore(db_url=_sqlite_url(db_dir))
    counters = MemoryCounterStore()
    notifier = RecordingNotifier()
    auth = build_auth_service(settings, user_store, counters, notifier)
    admin = make_user(user_store, "admin@example.com", role=Role.ADMIN, first_name="Ada", last_name="Admin")
    token = auth.codec.issue_access_token(admin.id, admin.role.value)
    app.router.lifespan_context = _patch_lifespan(settings, user_store, counters, auth)
    return user_store, notifier, admin, token


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, str, RecordingNotifier], None, None]:
    """Yield (client, admin_token, admin_id, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated stores. The admin user is
    created before the client starts.
    """
    user_store, notifier, admin, token = _start_client(tmp_path_factory.mktemp("api"))
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id, notifier
    user_store.close()


@pytest.fixture
def fresh_api(tmp_path: Path):
    """Function-scoped client factory for tests that need their own counters or settings.

        client, notifier = fresh_api(token_revocation_enabled=True)
    """
    stores: list[UserStore] = []
    clients: list[TestClient] = []

    def _make(**overrides) -> tuple[TestClient, RecordingNotifier]:
        db_dir = tmp_path / f"client{len(stores)}"
        db_dir.mkdir()
        user_store, notifier, _admin, _token = _start_client(db_dir, **overrides)
        stores.append(user_store)
        client = TestClient(app, raise_server_exceptions=True)
        client.__enter__()
        clients.append(client)
        return client, notifier

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
    for store in stores:
        store.close()


def register(client: TestClient, email: str, password: str = STRONG_PASSWORD, **extra):
    body = {"email": email, "password": password, "first_name": "Test", "last_name": "User", **extra}
    return client.post("/api/v1/auth/register", json=body)


def login(client: TestClient, email: str, password: str = STRONG_PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
