from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from jobintel.config import PipelineSettings, Settings
from jobintel.main import create_app
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd

PRODUCT_POSTING = {
    "id": "pm-1",
    "title": "Senior Product Manager",
    "company": "Acme",
    "description": "Own the roadmap for our payments platform.",
    "remote_type": "remote",
    "apply_url": "https://acme.example/jobs/1",
}
DATA_POSTING = {
    "id": "de-1",
    "title": "Data Engineer",
    "company": "Globex",
    "description": "Build batch pipelines in Python.",
    "remote_type": "remote",
    "apply_url": "https://globex.example/jobs/9",
}


@scenario("features/pipeline.feature", "A failing source does not block healthy sources")
def test_failing_source_is_isolated() -> None:
    pass


@scenario("features/pipeline.feature", "The same posting from two sources becomes one job")
def test_cross_source_postings_merge() -> None:
    pass


@scenario("features/pipeline.feature", "Re-running the pipeline does not duplicate jobs")
def test_rerun_is_idempotent() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(
        database_path=str(tmp_path / "jobintel.sqlite3"),
        settings=Settings(pipeline=PipelineSettings(source_max_retries=0)),
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with TestClient(app) as test_client:
        yield test_client


def register_inline(client: TestClient, source_id: str, postings: list[dict]) -> None:
    response = client.post(
        "/admin/jobs/sources",
        json={
            "source_id": source_id,
            "name": source_id,
            "source_type": "inline_json",
            "postings": postings,
        },
    )
    assert response.status_code == 200


@given(parsers.parse('an inline source "{source_id}" with the product and data postings'))
def given_product_and_data_source(client: TestClient, source_id: str) -> None:
    register_inline(client, source_id, [PRODUCT_POSTING, DATA_POSTING])


@given(parsers.parse('an inline source "{source_id}" with the product posting'))
def given_product_source(client: TestClient, source_id: str) -> None:
    register_inline(client, source_id, [{**PRODUCT_POSTING, "id": f"{source_id}-pm"}])


@given(parsers.parse('a JSON source "{source_id}" whose endpoint is down'))
def given_broken_source(client: TestClient, source_id: str) -> None:
    response = client.post(
        "/admin/jobs/sources",
        json={
            "source_id": source_id,
            "name": source_id,
            "source_type": "json_url",
            "url": "https://broken.example/jobs.json",
        },
    )
    assert response.status_code == 200


@when("the ingestion pipeline runs", target_fixture="run_response")
def when_pipeline_runs(client: TestClient):
    return client.post("/admin/jobs/pipeline")


@then("the pipeline run succeeds")
def then_pipeline_succeeds(run_response) -> None:
    assert run_response.status_code == 200
    assert run_response.json()["success"] is True


@then(parsers.parse('source "{source_id}" finished with status "{status}"'))
def then_source_status(run_response, source_id: str, status: str) -> None:
    sources = {item["source_id"]: item for item in run_response.json()["sources"]}
    assert sources[source_id]["status"] == status


@then(parsers.parse("{count:d} canonical jobs are stored"))
def then_job_count(client: TestClient, count: int) -> None:
    assert client.get("/jobs").json()["total"] == count


@then(parsers.parse("the merge log has {count:d} entries"))
def then_merge_log_count(client: TestClient, count: int) -> None:
    assert len(client.get("/admin/jobs/merge-log").json()) == count


@then(parsers.parse('sync metrics for "{source_id}" report {count:d} duplicates'))
def then_sync_metrics(client: TestClient, source_id: str, count: int) -> None:
    metrics = {item["source"]: item for item in client.get("/admin/jobs/metrics").json()}
    assert metrics[source_id]["duplicates_found"] == count
