"""
tests/test_api_guard.py -- Brute-force defense and token policy over HTTP.

Every test builds its own app state with fresh_api so lockout and
rate-limit counters start clean and settings can be overridden per test.

Covers:
  - Lockout: five failures, then 429 with retryAfter + Retry-After even for
    the correct password
  - Global request rate limit; /api/v1/health is exempt
  - Counter store down -> 503 (admission fails closed)
  - Store fault -> generic 500 with no internals in the body
  - Refresh rotation, logout revocation, unverified-login policy,
    self-registration switch
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from auth.guard import RateLimiter
from conftest import STRONG_PASSWORD, bearer, login, register
from kvstore.store import CounterStoreError, MemoryCounterStore


class UnreachableCounters(MemoryCounterStore):
    async def hit(self, key, now, window):
        raise CounterStoreError("connection refused")


def test_lockout_after_five_failures(fresh_api) -> None:
    client, _ = fresh_api()
    register(client, "bob@example.com")
    for _ in range(5):
        assert login(client, "bob@example.com", "Wrong123!").status_code == 401

    resp = login(client, "bob@example.com", STRONG_PASSWORD)
    assert resp.status_code == 429
    error = resp.json()["error"]
    assert error["code"] == "locked_out"
    assert 0 < error["retryAfter"] <= 900
    assert resp.headers["retry-after"] == str(error["retryAfter"])


def test_successful_login_resets_failures(fresh_api) -> None:
    client, _ = fresh_api()
    register(client, "carol@example.com")
    for _ in range(4):
        login(client, "carol@example.com", "Wrong123!")
    assert login(client, "carol@example.com").status_code == 200
    for _ in range(4):
        login(client, "carol@example.com", "Wrong123!")
    assert login(client, "carol@example.com").status_code == 200


def test_global_rate_limit_and_health_exemption(fresh_api) -> None:
    client, _ = fresh_api(rate_limit_requests=3)
    for _ in range(3):
        assert client.get("/api/v1/auth/status").status_code == 200

    resp = client.get("/api/v1/auth/status")
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["retry-after"]) > 0

    assert client.get("/api/v1/health").status_code == 200


def test_counter_store_down_fails_closed(fresh_api) -> None:
    client, _ = fresh_api()
    client.app.state.rate_limiter = RateLimiter(UnreachableCounters())
    resp = client.get("/api/v1/auth/status")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admission_unavailable"


def test_store_fault_is_generic_500(fresh_api, monkeypatch) -> None:
    client, _ = fresh_api()
    store = client.app.state.auth.store

    def broken(email):
        raise OperationalError("SELECT users", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store, "get_by_email", broken)
    resp = login(client, "anyone@example.com")
    assert resp.status_code == 500
    assert resp.json() == {"error": {"code": "internal_error", "message": "An unexpected error occurred."}}


def test_refresh_rotation(fresh_api) -> None:
    client, _ = fresh_api(refresh_rotation_enabled=True)
    old_refresh = register(client, "dave@example.com").json()["tokens"]["refresh_token"]
    client.cookies.clear()

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": old_refresh})
    assert resp.status_code == 200
    new_refresh = resp.json()["refresh_token"]
    assert new_refresh and new_refresh != old_refresh

    client.cookies.clear()
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": old_refresh}).status_code == 401
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": new_refresh}).status_code == 200


def test_logout_revokes_tokens(fresh_api) -> None:
    client, _ = fresh_api(token_revocation_enabled=True)
    tokens = register(client, "ellen@example.com").json()["tokens"]
    client.cookies.clear()
    assert client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"])).status_code == 200

    resp = client.post(
        "/api/v1/auth/logout",
        json={"refresh_token": tokens["refresh_token"]},
        headers=bearer(tokens["access_token"]),
    )
    assert resp.status_code == 200
    assert client.get("/api/v1/auth/me", headers=bearer(tokens["access_token"])).status_code == 401
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401


def test_unverified_login_blocked_until_verified(fresh_api) -> None:
    client, notifier = fresh_api(allow_unverified_login=False)
    resp = register(client, "fred@example.com")
    assert resp.status_code == 201
    assert resp.json()["tokens"] is None
    assert "access_token" not in resp.cookies

    blocked = login(client, "fred@example.com")
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "email_not_verified"

    token = notifier.last_token("verify", "fred@example.com")
    assert client.post("/api/v1/auth/verify-email", json={"token": token}).status_code == 200
    assert login(client, "fred@example.com").status_code == 200


def test_self_registration_disabled(fresh_api) -> None:
    client, notifier = fresh_api(self_registration_enabled=False)
    resp = register(client, "gina@example.com")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "registration_disabled"
    assert notifier.sent == []
