from __future__ import annotations

import hashlib
from typing import Protocol

from common.utils import jaccard, normalize_text, tokenize

from jobintel.config import DedupeSettings
from jobintel.models import DedupeDecision, Job, NormalizedJob

DESCRIPTION_SAMPLE_CHARS = 3000


class DedupeIndex(Protocol):
    def find_job_id_by_source_record(self, source: str, source_job_id: str) -> str | None: ...

    def find_job_id_by_dedupe_key(self, dedupe_key: str) -> str | None: ...

    def list_fuzzy_candidates(
        self,
        *,
        company_key: str,
        company_domain: str | None,
        limit: int,
    ) -> list[Job]: ...


def location_bucket(job: NormalizedJob) -> str:
    if job.remote_type == "remote":
        return "remote"
    if job.allowed_countries:
        return sorted(job.allowed_countries)[0].lower()
    if job.locations:
        return normalize_text(job.locations[0]) or "unknown"
    return "unknown"


def build_dedupe_key(job: NormalizedJob) -> str:
    company = job.company_domain or f"name:{job.company_key}"
    key_input = "|".join([job.normalized_title, company, location_bucket(job)])
    return hashlib.sha1(key_input.encode()).hexdigest()


def similarity(job: NormalizedJob, candidate: Job, *, title_weight: float = 0.6) -> float:
    """Weighted token Jaccard over titles and description samples.

    Falls back to title-only when either side has no description.
    """
    title_score = jaccard(
        set(job.normalized_title.split()),
        set(candidate.normalized_title.split()),
    )
    job_tokens = tokenize(job.description_text[:DESCRIPTION_SAMPLE_CHARS])
    candidate_tokens = tokenize(candidate.description_text[:DESCRIPTION_SAMPLE_CHARS])
    if not job_tokens or not candidate_tokens:
        return title_score
    description_score = jaccard(job_tokens, candidate_tokens)
    return title_weight * title_score + (1 - title_weight) * description_score


def same_company(job: NormalizedJob, candidate: Job) -> bool:
    if job.company_domain and candidate.company_domain:
        return job.company_domain == candidate.company_domain
    return bool(job.company_key) and job.company_key == candidate.company_key


class Deduplicator:
    def __init__(self, settings: DedupeSettings | None = None) -> None:
        self.settings = settings or DedupeSettings()

    def decide(self, job: NormalizedJob, index: DedupeIndex) -> DedupeDecision:
        dedupe_key = build_dedupe_key(job)

        known_job_id = index.find_job_id_by_source_record(job.source, job.source_job_id)
        if known_job_id is not None:
            return DedupeDecision(
                action="merge",
                dedupe_key=dedupe_key,
                matched_job_id=known_job_id,
                similarity_score=1.0,
                reason="same source record",
            )

        keyed_job_id = index.find_job_id_by_dedupe_key(dedupe_key)
        if keyed_job_id is not None:
            return DedupeDecision(
                action="merge",
                dedupe_key=dedupe_key,
                matched_job_id=keyed_job_id,
                similarity_score=1.0,
                reason="same dedupe_key",
            )

        candidates = index.list_fuzzy_candidates(
            company_key=job.company_key,
            company_domain=job.company_domain,
            limit=self.settings.candidate_limit,
        )
        best_id: str | None = None
        best_score = 0.0
        for candidate in candidates:
            if not same_company(job, candidate):
                continue
            score = similarity(job, candidate, title_weight=self.settings.title_weight)
            if score > best_score or (score == best_score and best_id and candidate.id < best_id):
                best_id, best_score = candidate.id, score

        if best_id is not None and best_score >= self.settings.similarity_threshold:
            return DedupeDecision(
                action="merge",
                dedupe_key=dedupe_key,
                matched_job_id=best_id,
                similarity_score=round(best_score, 4),
                reason=f"fuzzy match at {best_score:.2f}",
            )
        return DedupeDecision(
            action="create",
            dedupe_key=dedupe_key,
            similarity_score=round(best_score, 4),
        )
