from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from backend.app.main import create_app


def _token(secret: str, subject: str, roles: list[str], tenant_id: str | None = "tenant_a") -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    if tenant_id is not None:
        payload["tenant_id"] = tenant_id
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    return TestClient(create_app())


def _headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post("/jobs", json={"title": "Auth test job"})
    assert response.status_code == 401


def test_auth_allows_freelancer_token(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "freelancer-1", ["freelancer"])

    response = client.post("/jobs", headers=_headers(token), json={"title": "Auth test job"})

    assert response.status_code == 200


def test_jobs_are_invisible_to_other_tenants(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    owner = _token("test-secret", "freelancer-1", ["freelancer"], tenant_id="tenant_a")
    outsider = _token("test-secret", "freelancer-2", ["freelancer"], tenant_id="tenant_b")
    job_id = client.post("/jobs", headers=_headers(owner), json={"title": "Private job"}).json()["job_id"]

    assert client.get(f"/jobs/{job_id}", headers=_headers(owner)).status_code == 200
    assert client.get(f"/jobs/{job_id}", headers=_headers(outsider)).status_code == 404
    assert client.get(f"/jobs/{job_id}/timeline", headers=_headers(outsider)).status_code == 404
    assert client.get("/pipeline", headers=_headers(outsider)).json() == []


def test_token_without_tenant_is_rejected(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "freelancer-1", ["freelancer"], tenant_id=None)

    response = client.get("/pipeline", headers=_headers(token))

    assert response.status_code == 401


def test_token_with_wrong_secret_is_rejected(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("other-secret", "freelancer-1", ["freelancer"])

    assert client.get("/pipeline", headers=_headers(token)).status_code == 401


def test_service_role_cannot_manage_preferences(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    service = _token("test-secret", "scanner", ["service"])

    assert client.post("/jobs", headers=_headers(service), json={"title": "Scanner job"}).status_code == 200
    assert client.get("/notifications/preferences", headers=_headers(service)).status_code == 403
    assert client.get("/extension/auto-scan-config", headers=_headers(service)).status_code == 200


def test_token_without_roles_is_forbidden(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "freelancer-1", [])

    assert client.get("/pipeline", headers=_headers(token)).status_code == 403
