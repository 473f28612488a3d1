from __future__ import annotations

import json
import logging
import sqlite3
import threading

from common.utils import parse_iso_datetime

from jobintel.config import DiscoverySettings
from jobintel.models import (
    DiscoveredJob,
    DiscoverRequest,
    DiscoverResponse,
    Job,
    Match,
    RankingInputs,
    RemoteType,
    UserJobProfile,
)
from jobintel.normalizer import (
    canonical_title,
    detect_job_function,
    normalize_language,
    normalize_seniority,
)
from jobintel.ranking import RankingService
from jobintel.store import JobStore

LOGGER = logging.getLogger("jobintel.discovery")

ROLE_STOPWORDS = {"senior", "junior", "lead", "staff", "principal", "head", "the", "and", "of"}


class ProfileNotFoundError(Exception):
    def __init__(self, clerk_id: str) -> None:
        super().__init__(f"No job profile for {clerk_id}")
        self.clerk_id = clerk_id


def remote_types_for(request: DiscoverRequest, profile: UserJobProfile) -> list[RemoteType]:
    requested = list(request.filters.remote_type)
    if not profile.remote_only:
        return requested
    if not requested:
        return ["remote", "unknown"]
    allowed: list[RemoteType] = [value for value in requested if value in ("remote", "unknown")]
    return allowed or ["remote"]


def matches_role_family(job: Job, target_titles: list[str]) -> bool:
    """Lenient title pre-filter; keeps anything plausibly related."""
    if not target_titles or job.job_function is None:
        return True
    job_words = set(job.normalized_title.split())
    for target in target_titles:
        normalized = canonical_title(target)
        if detect_job_function(normalized) in (None, job.job_function):
            return True
        if (set(normalized.split()) - ROLE_STOPWORDS) & job_words:
            return True
    return False


def apply_score_floor(
    matches: list[Match], *, floor: int, min_results: int
) -> tuple[list[Match], bool]:
    """Drop matches under the floor unless that would leave too few.

    Matches must already be sorted best first. Returns the kept prefix and
    whether the floor was relaxed.
    """
    above = sum(1 for match in matches if match.score >= floor)
    positive = sum(1 for match in matches if match.score > 0)
    keep = max(above, min(min_results, positive))
    if keep == 0 and matches:
        keep = min(max(min_results, 1), len(matches))
    return matches[:keep], keep > above


def discover(
    store: JobStore,
    ranking: RankingService,
    clerk_id: str,
    request: DiscoverRequest,
    settings: DiscoverySettings | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> DiscoverResponse:
    settings = settings or DiscoverySettings()
    profile = store.get_profile(clerk_id)
    if profile is None:
        raise ProfileNotFoundError(clerk_id)

    filters = request.filters
    posted_since = parse_iso_datetime(filters.posted_since)
    candidates = store.search_active_jobs(
        remote_types=remote_types_for(request, profile),
        seniorities=[value for value in map(normalize_seniority, filters.seniority) if value],
        languages=[value for value in map(normalize_language, filters.languages) if value],
        sources=filters.sources,
        posted_since=posted_since.isoformat() if posted_since else None,
        text_query=request.query if request.mode == "manual_query" else None,
        limit=settings.max_fetch,
    )
    if request.mode == "personalized":
        candidates = [job for job in candidates if matches_role_family(job, profile.target_titles)]

    use_context = (
        request.use_profile_context
        if request.use_profile_context is not None
        else profile.use_profile_context_for_matching
    )
    use_context = bool(use_context and profile.profile_context_text)
    saved_ids = store.list_saved_job_ids(clerk_id)
    jobs_by_id = {job.id: job for job in candidates}

    ranked = True
    floor_relaxed = False
    matches: list[Match] = []
    try:
        matches = ranking.rank_jobs(
            candidates,
            RankingInputs(profile=profile, query=request.query, use_profile_context=use_context),
            cancel_event=cancel_event,
        )
    except Exception as exc:
        ranked = False
        LOGGER.warning(
            json.dumps(
                {
                    "event": "ranking_degraded",
                    "user_id": clerk_id,
                    "candidates": len(candidates),
                    "error": type(exc).__name__,
                }
            )
        )

    results: list[DiscoveredJob] = []
    if ranked:
        try:
            ranking.store_matches(matches)
        except sqlite3.Error as exc:
            LOGGER.warning(
                json.dumps({"event": "match_store_failed", "user_id": clerk_id, "error": str(exc)})
            )
        if not request.include_ineligible:
            matches = [match for match in matches if match.eligibility_passed]
        matches, floor_relaxed = apply_score_floor(
            matches, floor=settings.score_floor, min_results=settings.min_results
        )
        for match in matches:
            job = jobs_by_id[match.job_id]
            results.append(
                DiscoveredJob(
                    **job.model_dump(),
                    match_percentage=match.score,
                    match_reasons=match.reasons,
                    eligibility_passed=match.eligibility_passed,
                    is_saved=job.id in saved_ids,
                )
            )
    else:
        results = [
            DiscoveredJob(**job.model_dump(), is_saved=job.id in saved_ids) for job in candidates
        ]

    if request.exclude_saved:
        results = [job for job in results if not job.is_saved]
    total = len(results)
    page = results[request.offset : request.offset + request.limit]
    LOGGER.info(
        json.dumps(
            {
                "event": "discovery_complete",
                "user_id": clerk_id,
                "mode": request.mode,
                "candidates": len(candidates),
                "total": total,
                "returned": len(page),
                "ranked": ranked,
                "floor_relaxed": floor_relaxed,
            }
        )
    )
    return DiscoverResponse(
        jobs=page,
        mode=request.mode,
        total=total,
        ranked=ranked,
        floor_relaxed=floor_relaxed,
        profile_context_used=use_context,
    )
