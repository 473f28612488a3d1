from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobintel.config import Settings
from jobintel.main import create_app

pytestmark = pytest.mark.integration


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(database_path=str(tmp_path / "jobintel.sqlite3"), settings=Settings())

    @app.get("/boom")
    async def boom() -> dict[str, str]:
        raise RuntimeError("unexpected failure")

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def secured_client(tmp_path: Path):
    app = create_app(
        database_path=str(tmp_path / "jobintel.sqlite3"),
        settings=Settings(),
        api_key="root-key",
        api_tokens={
            "token-run": {"pipeline:run"},
            "token-read": {"pipeline:read"},
            "token-sources": {"sources:write"},
            "token-profiles": {"profiles:write"},
        },
    )
    with TestClient(app) as test_client:
        yield test_client


def test_request_id_header_and_metrics_snapshot(client: TestClient) -> None:
    first = client.get("/health")
    second = client.get("/health")
    not_found = client.get("/jobs/missing")
    metrics = client.get("/metrics")

    assert first.status_code == 200
    assert not_found.status_code == 404
    assert first.headers.get("x-request-id")
    assert first.headers.get("x-request-id") != second.headers.get("x-request-id")
    assert metrics.headers.get("x-request-id")

    body = metrics.json()
    assert body["totals"]["requests"] >= 3
    assert body["totals"]["errors"] >= 1
    assert body["endpoints"]["GET /health"]["count"] == 2
    assert body["endpoints"]["GET /jobs/missing"]["4xx"] == 1


def test_incoming_request_id_is_preserved(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "manual-request-id"})
    assert response.headers.get("x-request-id") == "manual-request-id"


def test_unhandled_error_returns_json_with_request_id(client: TestClient) -> None:
    response = client.get("/boom", headers={"x-request-id": "req-500"})

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal Server Error", "request_id": "req-500"}
    assert response.headers.get("x-request-id") == "req-500"
    assert client.get("/metrics").json()["endpoints"]["GET /boom"]["5xx"] == 1


def test_open_access_without_configured_tokens(client: TestClient) -> None:
    assert client.get("/admin/jobs/metrics").status_code == 200
    assert client.post("/admin/jobs/pipeline").status_code == 200


def test_scope_enforcement(secured_client: TestClient) -> None:
    assert secured_client.post("/admin/jobs/pipeline").status_code == 401
    unknown = secured_client.post("/admin/jobs/pipeline", headers={"x-api-key": "nope"})
    assert unknown.status_code == 401

    read_only = secured_client.post("/admin/jobs/pipeline", headers={"x-api-key": "token-read"})
    assert read_only.status_code == 403
    runner = secured_client.post("/admin/jobs/pipeline", headers={"x-api-key": "token-run"})
    assert runner.status_code == 200

    assert secured_client.get(
        "/admin/jobs/metrics", headers={"x-api-key": "token-run"}
    ).status_code == 403
    assert secured_client.get(
        "/admin/jobs/merge-log", headers={"x-api-key": "token-read"}
    ).status_code == 200

    profile = {"clerk_id": "user_1", "target_titles": ["Designer"]}
    assert secured_client.post(
        "/profiles", json=profile, headers={"x-api-key": "token-sources"}
    ).status_code == 403
    assert secured_client.post(
        "/profiles", json=profile, headers={"x-api-key": "token-profiles"}
    ).status_code == 200


def test_api_key_grants_every_scope(secured_client: TestClient) -> None:
    headers = {"x-api-key": "root-key"}

    assert secured_client.get("/admin/jobs/sources", headers=headers).status_code == 200
    assert secured_client.post("/admin/jobs/pipeline", headers=headers).status_code == 200
    assert secured_client.delete("/profiles/ghost", headers=headers).status_code == 404


def test_public_reads_stay_open(secured_client: TestClient) -> None:
    assert secured_client.get("/health").status_code == 200
    assert secured_client.get("/jobs").json() == {"jobs": [], "total": 0}
