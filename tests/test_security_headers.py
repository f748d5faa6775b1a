"""
tests/test_security_headers.py -- Response hardening headers from api/main.py.

The headers must be present on success, on error envelopes from the route
layer and on responses the admission middleware short-circuits.
"""

from __future__ import annotations

HARDENING = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def _assert_hardened(resp) -> None:
    for name, value in HARDENING.items():
        assert resp.headers[name] == value, name


def test_headers_on_success(fresh_api):
    client, _ = fresh_api()
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    _assert_hardened(resp)
    assert "Strict-Transport-Security" not in resp.headers


def test_headers_on_error_envelope(fresh_api):
    client, _ = fresh_api()
    client.cookies.clear()
    resp = client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    _assert_hardened(resp)


def test_headers_on_rate_limited_response(fresh_api):
    client, _ = fresh_api(rate_limit_requests=1)
    client.get("/api/v1/auth/status")
    resp = client.get("/api/v1/auth/status")
    assert resp.status_code == 429
    _assert_hardened(resp)
