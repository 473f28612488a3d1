from __future__ import annotations

from typing import Any

import pytest
from jobintel.config import DedupeSettings
from jobintel.dedupe import Deduplicator, build_dedupe_key, location_bucket, similarity
from jobintel.models import Job, NormalizedJob

pytestmark = pytest.mark.unit

DESCRIPTION = (
    "Own the product roadmap for our payments platform, partner with engineering and design, "
    "and talk to customers every week to shape what we build next."
)


def normalized_job(**overrides: Any) -> NormalizedJob:
    values: dict[str, Any] = {
        "source": "remotive",
        "source_job_id": "r-1",
        "title": "Senior Product Manager",
        "normalized_title": "senior product manager",
        "company_name": "Acme",
        "company_key": "acme",
        "description_text": DESCRIPTION,
        "remote_type": "remote",
        "fetched_at": "2026-10-01T00:00:00+00:00",
    }
    values.update(overrides)
    return NormalizedJob(**values)


def stored_job(job_id: str, **overrides: Any) -> Job:
    values: dict[str, Any] = {
        "id": job_id,
        "dedupe_key": f"key-{job_id}",
        "title": "Senior Product Manager",
        "normalized_title": "senior product manager",
        "company_name": "Acme",
        "company_key": "acme",
        "description_text": DESCRIPTION,
        "remote_type": "remote",
        "first_seen_at": "2026-09-01T00:00:00+00:00",
        "last_seen_at": "2026-09-01T00:00:00+00:00",
        "source_primary": "remoteok",
    }
    values.update(overrides)
    return Job(**values)


class FakeIndex:
    def __init__(
        self,
        *,
        source_records: dict[tuple[str, str], str] | None = None,
        dedupe_keys: dict[str, str] | None = None,
        candidates: list[Job] | None = None,
    ) -> None:
        self.source_records = source_records or {}
        self.dedupe_keys = dedupe_keys or {}
        self.candidates = candidates or []

    def find_job_id_by_source_record(self, source: str, source_job_id: str) -> str | None:
        return self.source_records.get((source, source_job_id))

    def find_job_id_by_dedupe_key(self, dedupe_key: str) -> str | None:
        return self.dedupe_keys.get(dedupe_key)

    def list_fuzzy_candidates(
        self, *, company_key: str, company_domain: str | None, limit: int
    ) -> list[Job]:
        return self.candidates[:limit]


def test_location_bucket() -> None:
    assert location_bucket(normalized_job()) == "remote"
    onsite_in_countries = normalized_job(remote_type="onsite", allowed_countries=["US", "CA"])
    assert location_bucket(onsite_in_countries) == "ca"
    onsite_in_city = normalized_job(remote_type="onsite", locations=["Berlin, DE"])
    assert location_bucket(onsite_in_city) == "berlin de"
    assert location_bucket(normalized_job(remote_type="hybrid")) == "unknown"


def test_dedupe_key_ignores_source_and_prefers_domain() -> None:
    first = normalized_job()
    second = normalized_job(source="remoteok", source_job_id="ok-7", title="Sr Product Manager")
    assert build_dedupe_key(first) == build_dedupe_key(second)

    with_domain = normalized_job(company_domain="acme.io")
    renamed = normalized_job(company_domain="acme.io", company_key="acme corp")
    assert build_dedupe_key(with_domain) == build_dedupe_key(renamed)
    assert build_dedupe_key(with_domain) != build_dedupe_key(first)


def test_similarity_falls_back_to_title_without_descriptions() -> None:
    job = normalized_job(description_text="")
    candidate = stored_job("j1", normalized_title="product manager")
    assert similarity(job, candidate) == pytest.approx(2 / 3)


def test_decide_merges_known_source_record_first() -> None:
    index = FakeIndex(source_records={("remotive", "r-1"): "job-1"})
    decision = Deduplicator().decide(normalized_job(), index)
    assert decision.action == "merge"
    assert decision.matched_job_id == "job-1"
    assert decision.reason == "same source record"


def test_decide_merges_on_dedupe_key() -> None:
    job = normalized_job()
    index = FakeIndex(dedupe_keys={build_dedupe_key(job): "job-2"})
    decision = Deduplicator().decide(job, index)
    assert decision.action == "merge"
    assert decision.matched_job_id == "job-2"
    assert decision.similarity_score == 1.0


def test_decide_fuzzy_merges_same_company_above_threshold() -> None:
    job = normalized_job(normalized_title="senior product manager payments")
    index = FakeIndex(
        candidates=[
            stored_job("other-company", company_key="globex"),
            stored_job("close", normalized_title="senior product manager"),
        ]
    )
    decision = Deduplicator(DedupeSettings(similarity_threshold=0.8)).decide(job, index)
    assert decision.action == "merge"
    assert decision.matched_job_id == "close"
    assert decision.reason.startswith("fuzzy match at")


def test_decide_creates_when_below_threshold() -> None:
    job = normalized_job(normalized_title="staff data engineer", description_text="Pipelines.")
    index = FakeIndex(candidates=[stored_job("pm")])
    decision = Deduplicator().decide(job, index)
    assert decision.action == "create"
    assert decision.matched_job_id is None
    assert decision.similarity_score < 0.85
