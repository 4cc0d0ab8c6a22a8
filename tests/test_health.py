"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status and version fields
  - No authentication required
  - Requests for hosts outside the allow-list are rejected
"""

from __future__ import annotations

from api.main import VERSION


def test_health_returns_200_with_version(client):
    """Health endpoint returns 200 with status and version."""
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": VERSION}


def test_health_no_auth_required(client):
    """Health endpoint is accessible without any authentication headers."""
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_unknown_host_rejected(client):
    """TrustedHostMiddleware rejects requests for hosts outside the allow-list."""
    resp = client.get("/api/v1/health", headers={"host": "evil.example.com"})
    assert resp.status_code == 400
