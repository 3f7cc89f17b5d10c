"""
Tests for application wiring: health, error mapping, routes and startup bootstrap.
"""

import json

import pytest
from unittest.mock import patch, AsyncMock
from httpx import AsyncClient, ASGITransport
from fastapi.routing import APIRoute
from starlette.requests import Request

from app.errors import AccessDenied, InvalidState, NotFound, PartialFailure, ProviderUnavailable
from app.services.auth_service import bootstrap_first_admin, verify_password


@pytest.mark.anyio
@pytest.mark.parametrize("db_ok,status,database", [
    (True, "healthy", "connected"),
    (False, "degraded", "disconnected"),
])
async def test_health_reports_database_state(db_ok, status, database):
    with patch("app.main.check_db_connection", new_callable=AsyncMock, return_value=db_ok):
        from app.main import app
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": status,
        "service": "Campaign Recommendation Engine",
        "database": database,
    }


@pytest.mark.anyio
@pytest.mark.parametrize("exc,status_code,code", [
    (AccessDenied("nope"), 403, "access_denied"),
    (InvalidState("already applied"), 409, "invalid_state"),
    (NotFound("Campaign", "c-1"), 404, "not_found"),
    (ProviderUnavailable("no key"), 503, "provider_unavailable"),
])
async def test_engine_errors_become_json(exc, status_code, code):
    from app.main import engine_error_handler

    request = Request({"type": "http", "method": "POST", "path": "/api/x", "headers": []})
    response = await engine_error_handler(request, exc)
    assert response.status_code == status_code
    body = json.loads(response.body)
    assert body == {"error": code, "detail": exc.detail}


@pytest.mark.anyio
async def test_partial_failure_body_carries_run_summary():
    from app.main import engine_error_handler

    summary = {"generated": 8, "failed": [{"campaign_id": "c-9", "reason": "timed out after 30s"}]}
    request = Request({"type": "http", "method": "POST", "path": "/api/recommendations/generate", "headers": []})
    response = await engine_error_handler(request, PartialFailure(summary))
    body = json.loads(response.body)
    assert response.status_code == 207
    assert body["error"] == "partial_failure"
    assert body["generated"] == 8
    assert body["failed"][0]["campaign_id"] == "c-9"


def test_every_route_is_mounted_under_api():
    from app.main import app

    paths = {r.path for r in app.routes if isinstance(r, APIRoute)}
    assert all(p.startswith("/api/") for p in paths)
    for expected in (
        "/api/recommendations/generate",
        "/api/recommendations/generate-consensus",
        "/api/ai/providers",
        "/api/chat/query",
        "/api/chat/consensus",
        "/api/cron/recommendations",
    ):
        assert expected in paths


@pytest.mark.anyio
async def test_bootstrap_creates_first_admin_only_once(db):
    admin = await bootstrap_first_admin(db, " Owner@Example.com ", "first-pass-123")
    assert admin.email == "owner@example.com"
    assert admin.role == "admin"
    assert verify_password("first-pass-123", admin.password_hash)

    assert await bootstrap_first_admin(db, "second@example.com", "second-pass-123") is None
