"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and database fields
  - No authentication required (no API key, no session)
  - Unknown Host headers are refused by TrustedHostMiddleware
  - Security headers on every response, error responses included
"""

from __future__ import annotations

from api.main import API_VERSION


def test_health_returns_200(env):
    resp = env.client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": API_VERSION, "database": "ok"}


def test_health_no_auth_required(env):
    """Health endpoint is accessible without any authentication headers."""
    resp = env.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_untrusted_host_rejected(env):
    resp = env.client.get("/api/v1/health", headers={"Host": "evil.example.com"})
    assert resp.status_code == 400


def test_security_headers_present(env):
    for resp in (
        env.client.get("/api/v1/health"),
        env.client.post("/api/v1/auth/login", json={"email": "x@y.z", "password": "p"}),
    ):
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "DENY"
        assert resp.headers["referrer-policy"] == "strict-origin-when-cross-origin"
        assert "frame-ancestors 'none'" in resp.headers["content-security-policy"]
        assert "camera=()" in resp.headers["permissions-policy"]
    # Plain HTTP test client: no HSTS.
    assert "strict-transport-security" not in resp.headers


def test_hsts_over_https(env):
    resp = env.client.get("https://localhost/api/v1/health")
    assert resp.headers["strict-transport-security"] == "max-age=31536000; includeSubDomains"
