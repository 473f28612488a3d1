from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from common.utils import jaccard, now_utc_iso, parse_iso_datetime, tokenize

from jobintel.config import RANKING_FACTORS, RankingSettings
from jobintel.models import (
    EligibilityResult,
    Job,
    Match,
    MatchInputs,
    MatchReason,
    RankingInputs,
    UserJobProfile,
)
from jobintel.normalizer import (
    SENIORITY_LEVELS,
    canonical_title,
    normalize_language,
    normalize_seniority,
)
from jobintel.regions import (
    WORLDWIDE,
    locations_overlap,
    normalize_location_preferences,
    region_covers,
)
from jobintel.store import JobStore

LOGGER = logging.getLogger("jobintel.ranking")

TITLE_IGNORED_WORDS = {
    "senior",
    "junior",
    "lead",
    "staff",
    "principal",
    "head",
    "chief",
    "vice",
    "president",
    "director",
}
SOURCE_QUALITY = {"remotive": 1.0, "remoteok": 0.9, "adzuna": 0.7}
CONTEXT_STOPWORDS = {
    "ability",
    "career",
    "company",
    "dedicated",
    "driving",
    "environments",
    "excellent",
    "experience",
    "focused",
    "great",
    "innovative",
    "looking",
    "motivated",
    "opportunity",
    "outcomes",
    "passionate",
    "position",
    "professional",
    "qualifications",
    "requirements",
    "responsibilities",
    "seeking",
    "should",
    "skills",
    "solutions",
    "strong",
    "which",
    "would",
    "working",
}
MAX_CONTEXT_TERMS = 20
PERIODS_PER_YEAR = {"year": 1, "month": 12, "hour": 2080}
HARD_CHECKS = ("location_not_allowed", "location_excluded", "remote_type_conflict")


class RankingCancelled(Exception):
    pass


def _annual(amount: float | None, period: str | None) -> float | None:
    if amount is None:
        return None
    return amount * PERIODS_PER_YEAR.get(period or "year", 1)


def _title_keywords(title: str) -> list[str]:
    return [
        word
        for word in canonical_title(title).split()
        if len(word) > 3 and word not in TITLE_IGNORED_WORDS
    ]


def score_title_match(job: Job, profile: UserJobProfile) -> float:
    job_title = job.normalized_title or canonical_title(job.title)
    best = 0.0
    for target in profile.target_titles:
        keywords = _title_keywords(target)
        matched = sum(1 for word in keywords if word in job_title)
        if keywords and matched == len(keywords):
            score = 1.0
        elif len(keywords) > 1 and matched >= len(keywords) - 1:
            score = 0.8
        elif matched >= 2:
            score = 0.6
        elif matched == 1:
            score = 0.3
        else:
            score = 0.0
        closeness = jaccard(set(job_title.split()), set(canonical_title(target).split()))
        if closeness > 0.8:
            score = max(score, closeness)
        best = max(best, score)
    return best


def score_skill_overlap(job: Job, profile: UserJobProfile) -> float:
    """Share of the job's skills the user has."""
    job_skills = {skill.lower() for skill in job.skills}
    user_skills = {skill.lower() for skill in profile.skills}
    if not job_skills or not user_skills:
        return 0.0
    return len(job_skills & user_skills) / len(job_skills)


def score_seniority(job: Job, profile: UserJobProfile) -> float:
    user_level = SENIORITY_LEVELS.get(normalize_seniority(profile.seniority) or "")
    job_level = SENIORITY_LEVELS.get(job.seniority or "")
    if user_level is None or job_level is None:
        return 0.5
    diff = abs(job_level - user_level)
    if diff == 0:
        return 1.0
    if diff == 1:
        return 0.8
    if diff == 2:
        return 0.5
    return 0.2


def score_location_fit(job: Job, profile: UserJobProfile) -> float:
    user_codes = normalize_location_preferences(profile.locations_allowed)
    if not user_codes:
        return 1.0
    if not job.allowed_countries:
        return 0.5
    return 1.0 if locations_overlap(job.allowed_countries, user_codes) else 0.0


def score_salary_overlap(job: Job, profile: UserJobProfile) -> float:
    job_bounds = [
        amount
        for amount in (
            _annual(job.compensation_min, job.compensation_period),
            _annual(job.compensation_max, job.compensation_period),
        )
        if amount is not None
    ]
    if not job_bounds or (profile.salary_min is None and profile.salary_max is None):
        return 0.5
    if (
        job.compensation_currency
        and profile.salary_currency
        and job.compensation_currency.upper() != profile.salary_currency.upper()
    ):
        return 0.5
    job_low, job_high = min(job_bounds), max(job_bounds)
    user_low = profile.salary_min if profile.salary_min is not None else 0.0
    user_high = profile.salary_max if profile.salary_max is not None else float("inf")
    if job_high >= user_low and job_low <= user_high:
        return 1.0
    if job_high < user_low:
        gap = (user_low - job_high) / user_low if user_low else 1.0
        return max(0.0, 0.5 - gap)
    return 0.0


def score_freshness(job: Job, now: datetime) -> float:
    posted = parse_iso_datetime(job.posted_at or job.first_seen_at)
    if posted is None:
        return 0.5
    days = (now - posted).total_seconds() / 86400
    if days <= 7:
        return 1.0
    if days <= 14:
        return 0.8
    if days <= 30:
        return 0.6
    if days <= 60:
        return 0.4
    return 0.2


def score_source_quality(job: Job) -> float:
    return SOURCE_QUALITY.get(job.source_primary, 0.5)


def score_query_relevance(job: Job, query: str) -> float:
    words = [word for word in tokenize(query) if len(word) > 2]
    if not words:
        return 0.0
    haystack = " ".join(
        [job.normalized_title, job.company_name, job.description_text, *job.skills]
    ).lower()
    return sum(1 for word in words if word in haystack) / len(words)


def score_profile_context(job: Job, context_text: str) -> float:
    terms: list[str] = []
    for word in context_text.lower().split():
        word = word.strip(".,;:!?()\"'")
        if len(word) > 4 and word not in CONTEXT_STOPWORDS and word not in terms:
            terms.append(word)
        if len(terms) >= MAX_CONTEXT_TERMS:
            break
    if not terms:
        return 0.0
    job_tokens = tokenize(f"{job.normalized_title} {job.description_text}")
    return sum(1 for term in terms if term in job_tokens) / len(terms)


def _posted_sort_key(posted_at: str | None) -> tuple[int, float]:
    parsed = parse_iso_datetime(posted_at)
    if parsed is None:
        return (1, 0.0)
    return (0, -parsed.timestamp())


def sort_matches(matches: list[Match]) -> list[Match]:
    return sorted(
        matches,
        key=lambda match: (-match.score, *_posted_sort_key(match.posted_at), match.job_id),
    )


class RankingService:
    """Explainable weighted scoring plus a separate eligibility gate."""

    def __init__(self, store: JobStore, settings: RankingSettings | None = None) -> None:
        self.store = store
        self.settings = settings or RankingSettings()

    def check_eligibility(self, job: Job, profile: UserJobProfile) -> EligibilityResult:
        failed: list[str] = []
        job_codes = job.allowed_countries
        allowed = normalize_location_preferences(profile.locations_allowed)
        if allowed and job_codes and not locations_overlap(job_codes, allowed):
            failed.append("location_not_allowed")

        excluded = normalize_location_preferences(profile.locations_excluded)
        if excluded and job_codes and WORLDWIDE not in job_codes:
            if all(any(region_covers(code, job_code) for code in excluded) for job_code in job_codes):
                failed.append("location_excluded")

        if profile.remote_only and job.remote_type in ("onsite", "hybrid"):
            failed.append("remote_type_conflict")

        languages = {normalize_language(value) for value in profile.languages} - {None}
        if languages and job.language and job.language not in languages:
            failed.append("language_mismatch")

        blocking = set(HARD_CHECKS)
        if self.settings.enforce_language:
            blocking.add("language_mismatch")
        return EligibilityResult(
            passed=not any(check in blocking for check in failed),
            failed_checks=failed,
        )

    def score_job(self, job: Job, inputs: RankingInputs, *, now: datetime | None = None) -> Match:
        now = now or datetime.now(UTC)
        profile = inputs.profile
        weights = self.settings.weights
        use_context = inputs.use_profile_context and bool(profile.profile_context_text)

        sub_scores: dict[str, float] = {
            "title_match": score_title_match(job, profile),
            "skill_overlap": score_skill_overlap(job, profile),
            "seniority_alignment": score_seniority(job, profile),
            "location_fit": score_location_fit(job, profile),
            "salary_overlap": score_salary_overlap(job, profile),
            "freshness": score_freshness(job, now),
            "source_quality": score_source_quality(job),
            "query_relevance": score_query_relevance(job, inputs.query) if inputs.query else 0.0,
            "profile_context": (
                score_profile_context(job, profile.profile_context_text or "")
                if use_context
                else 0.0
            ),
        }

        reasons: list[MatchReason] = []
        total = 0.0
        for factor in RANKING_FACTORS:
            contribution = sub_scores[factor] * getattr(weights, factor) * 100
            if contribution <= 0:
                continue
            total += contribution
            reasons.append(
                MatchReason(
                    factor=factor,
                    score_contribution=round(contribution, 2),
                    description=self._describe(factor, sub_scores[factor], job, inputs),
                )
            )
        reasons.sort(key=lambda reason: -reason.score_contribution)

        eligibility = self.check_eligibility(job, profile)
        if not eligibility.passed:
            reasons.insert(
                0,
                MatchReason(
                    factor="eligibility_failed",
                    score_contribution=0.0,
                    description="Does not meet eligibility: "
                    + ", ".join(eligibility.failed_checks),
                ),
            )

        return Match(
            user_id=profile.clerk_id,
            job_id=job.id,
            score=min(100, round(total)),
            reasons=reasons,
            eligibility_passed=eligibility.passed,
            failed_checks=eligibility.failed_checks,
            inputs_used=MatchInputs(
                profile_basics=True,
                profile_context=use_context,
                query=bool(inputs.query),
            ),
            posted_at=job.posted_at,
            updated_at=now_utc_iso(),
        )

    def _score_or_zero(self, job: Job, inputs: RankingInputs, now: datetime) -> Match:
        try:
            return self.score_job(job, inputs, now=now)
        except Exception as exc:
            LOGGER.exception(
                json.dumps({"event": "scoring_error", "job_id": job.id, "error": str(exc)})
            )
            return Match(
                user_id=inputs.profile.clerk_id,
                job_id=job.id,
                score=0,
                reasons=[
                    MatchReason(
                        factor="scoring_error",
                        score_contribution=0.0,
                        description="This job could not be scored.",
                    )
                ],
                eligibility_passed=True,
                posted_at=job.posted_at,
                updated_at=now_utc_iso(),
            )

    def rank_jobs(
        self,
        jobs: list[Job],
        inputs: RankingInputs,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[Match]:
        """Score every job and return matches best first.

        Raises RankingCancelled once cancel_event is set; jobs not yet
        scored at that point are never started.
        """
        now = datetime.now(UTC)

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        matches: list[Match] = []
        if self.settings.max_workers <= 1 or len(jobs) < 2:
            for job in jobs:
                if cancelled():
                    raise RankingCancelled()
                matches.append(self._score_or_zero(job, inputs, now))
        else:
            pool = ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix="jobintel-rank"
            )
            try:
                futures = [pool.submit(self._score_or_zero, job, inputs, now) for job in jobs]
                for future in futures:
                    if cancelled():
                        raise RankingCancelled()
                    matches.append(future.result())
            finally:
                pool.shutdown(wait=False, cancel_futures=True)

        ranked = sort_matches(matches)
        LOGGER.info(
            json.dumps(
                {
                    "event": "ranking_complete",
                    "user_id": inputs.profile.clerk_id,
                    "jobs": len(jobs),
                    "eligible": sum(1 for match in ranked if match.eligibility_passed),
                    "top_score": ranked[0].score if ranked else None,
                }
            )
        )
        return ranked

    def store_matches(self, matches: list[Match]) -> int:
        return self.store.upsert_matches(matches)

    @staticmethod
    def _describe(factor: str, sub_score: float, job: Job, inputs: RankingInputs) -> str:
        if factor == "title_match":
            if sub_score >= 0.9:
                return f'Job title "{job.title}" closely matches your target roles'
            if sub_score >= 0.5:
                return f'Job title "{job.title}" is related to your target roles'
            return "Job title is somewhat relevant to your profile"
        if factor == "skill_overlap":
            user_skills = {skill.lower() for skill in inputs.profile.skills}
            shared = [skill for skill in job.skills if skill.lower() in user_skills]
            return "Matches your skills: " + ", ".join(shared[:3])
        if factor == "seniority_alignment":
            if job.seniority is None or sub_score == 0.5:
                return "Seniority level is not specified"
            if sub_score >= 0.9:
                return f"Seniority level ({job.seniority}) matches your experience"
            return f"Seniority level ({job.seniority}) is close to your level"
        if factor == "location_fit":
            if sub_score < 1.0:
                return "Location eligibility is not stated"
            return "Job location matches your preferences"
        if factor == "salary_overlap":
            if sub_score >= 1.0:
                return "Salary range overlaps your expectations"
            return "Salary information is incomplete"
        if factor == "freshness":
            if sub_score >= 1.0:
                return "Posted this week"
            if sub_score >= 0.8:
                return "Posted within the last 2 weeks"
            return "Posted a while ago"
        if factor == "source_quality":
            return f"Listed on {job.source_primary}"
        if factor == "query_relevance":
            return f'Matches your search for "{(inputs.query or "")[:50]}"'
        return "Aligns with your career goals and preferences"
