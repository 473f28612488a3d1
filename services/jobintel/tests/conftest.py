from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from jobintel.models import NormalizedJob, SourceConfigUpsertRequest
from jobintel.store import JobStore

NormalizedJobFactory = Callable[..., NormalizedJob]


@pytest.fixture
def store(tmp_path: Path) -> Iterator[JobStore]:
    job_store = JobStore(database_path=str(tmp_path / "jobintel.sqlite3"))
    job_store.connect()
    try:
        yield job_store
    finally:
        job_store.close()


@pytest.fixture
def make_job() -> NormalizedJobFactory:
    def factory(**overrides: Any) -> NormalizedJob:
        values: dict[str, Any] = {
            "source": "remotive",
            "source_job_id": "r-1",
            "title": "Senior Product Manager",
            "normalized_title": "senior product manager",
            "company_name": "Acme",
            "company_key": "acme",
            "description_text": "Own the roadmap for our payments platform.",
            "skills": ["roadmapping", "sql"],
            "job_function": "product",
            "seniority": "Senior",
            "remote_type": "remote",
            "allowed_countries": ["Worldwide"],
            "language": "en",
            "apply_url": "https://acme.example/jobs/1",
            "posted_at": "2026-10-01T00:00:00+00:00",
            "fetched_at": "2026-10-01T00:00:00+00:00",
        }
        values.update(overrides)
        return NormalizedJob(**values)

    return factory


@pytest.fixture
def add_inline_source(store: JobStore) -> Callable[..., None]:
    def register(source_id: str, postings: list[dict[str, Any]], **extra: Any) -> None:
        store.upsert_source_config(
            SourceConfigUpsertRequest(
                source_id=source_id,
                name=source_id.replace("_", " ").title(),
                source_type="inline_json",
                postings=postings,
                **extra,
            )
        )

    return register
