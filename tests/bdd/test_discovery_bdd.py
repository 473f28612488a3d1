from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobintel.config import Settings
from jobintel.main import create_app
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd


@scenario("features/discovery.feature", "Personalized discovery ranks matching roles first")
def test_personalized_discovery() -> None:
    pass


@scenario("features/discovery.feature", "Discovery without a profile is rejected")
def test_discovery_requires_profile() -> None:
    pass


@scenario("features/discovery.feature", "Manual search finds jobs outside the target role")
def test_manual_search() -> None:
    pass


@scenario("features/discovery.feature", "Saved jobs can be excluded")
def test_exclude_saved_jobs() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(database_path=str(tmp_path / "jobintel.sqlite3"), settings=Settings())
    with TestClient(app) as test_client:
        yield test_client


@given("ingested product and engineering jobs")
def given_ingested_jobs(client: TestClient) -> None:
    created = client.post(
        "/admin/jobs/sources",
        json={
            "source_id": "partner_feed",
            "name": "Partner Feed",
            "source_type": "inline_json",
            "postings": [
                {
                    "id": "pm-1",
                    "title": "Senior Product Manager",
                    "company": "Acme",
                    "description": "Own the roadmap for our payments platform using SQL.",
                    "remote_type": "remote",
                    "seniority": "Senior",
                    "skills": ["roadmapping"],
                },
                {
                    "id": "be-1",
                    "title": "Backend Engineer",
                    "company": "Globex",
                    "description": "Build Python APIs for our logistics platform.",
                    "remote_type": "remote",
                },
            ],
        },
    )
    assert created.status_code == 200
    assert client.post("/admin/jobs/pipeline").json()["stats"]["jobs_created"] == 2


@given(parsers.parse('a profile for "{clerk_id}" targeting "{title}"'))
def given_profile(client: TestClient, clerk_id: str, title: str) -> None:
    response = client.post(
        "/profiles",
        json={
            "clerk_id": clerk_id,
            "target_titles": [title],
            "skills": ["roadmapping", "sql"],
            "seniority": "Senior",
        },
    )
    assert response.status_code == 200


@given(parsers.parse('"{clerk_id}" saved "{title}"'))
def given_saved_job(client: TestClient, clerk_id: str, title: str) -> None:
    jobs = client.get("/jobs").json()["jobs"]
    job_id = next(job["id"] for job in jobs if job["title"] == title)
    response = client.put(f"/jobs/{job_id}/saved", headers={"x-clerk-id": clerk_id})
    assert response.status_code == 200


@when(parsers.parse('"{clerk_id}" discovers jobs'), target_fixture="response")
def when_discovering(client: TestClient, clerk_id: str):
    return client.post("/jobs/discover", json={}, headers={"x-clerk-id": clerk_id})


@when(parsers.parse('"{clerk_id}" discovers jobs excluding saved ones'), target_fixture="response")
def when_discovering_unsaved(client: TestClient, clerk_id: str):
    return client.post(
        "/jobs/discover", json={"exclude_saved": True}, headers={"x-clerk-id": clerk_id}
    )


@when(parsers.parse('"{clerk_id}" searches for "{query}"'), target_fixture="response")
def when_searching(client: TestClient, clerk_id: str, query: str):
    return client.post(
        "/jobs/discover",
        json={"mode": "manual_query", "query": query},
        headers={"x-clerk-id": clerk_id},
    )


@then("the discovery response is ranked")
def then_ranked(response) -> None:
    assert response.status_code == 200
    assert response.json()["ranked"] is True


@then(parsers.parse('the top discovered job is "{title}"'))
def then_top_job(response, title: str) -> None:
    assert response.status_code == 200
    assert response.json()["jobs"][0]["title"] == title


@then("every discovered job has a match percentage")
def then_every_job_scored(response) -> None:
    jobs = response.json()["jobs"]
    assert jobs
    assert all(job["match_percentage"] is not None for job in jobs)


@then(parsers.parse("the discovery response status is {status:d}"))
def then_status(response, status: int) -> None:
    assert response.status_code == status


@then(parsers.parse('no discovered job is "{title}"'))
def then_job_absent(response, title: str) -> None:
    assert response.status_code == 200
    assert title not in [job["title"] for job in response.json()["jobs"]]
