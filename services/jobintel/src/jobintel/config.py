from __future__ import annotations

import json
import os
import tempfile
from typing import Any

from pydantic import BaseModel, Field, model_validator

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jobintel", "jobintel.sqlite3")

RANKING_FACTORS = (
    "title_match",
    "skill_overlap",
    "seniority_alignment",
    "location_fit",
    "salary_overlap",
    "freshness",
    "source_quality",
    "query_relevance",
    "profile_context",
)


class ScoringWeights(BaseModel):
    title_match: float = Field(default=0.40, ge=0)
    skill_overlap: float = Field(default=0.20, ge=0)
    seniority_alignment: float = Field(default=0.10, ge=0)
    location_fit: float = Field(default=0.07, ge=0)
    salary_overlap: float = Field(default=0.06, ge=0)
    freshness: float = Field(default=0.05, ge=0)
    source_quality: float = Field(default=0.02, ge=0)
    query_relevance: float = Field(default=0.05, ge=0)
    profile_context: float = Field(default=0.05, ge=0)

    @model_validator(mode="after")
    def validate_total(self) -> ScoringWeights:
        total = sum(getattr(self, factor) for factor in RANKING_FACTORS)
        if abs(total - 1.0) > 0.001:
            raise ValueError(f"Ranking weights must sum to 1.0, got {total:.3f}")
        return self


class PipelineSettings(BaseModel):
    max_workers: int = Field(default=4, ge=1, le=32)
    source_timeout_seconds: float = Field(default=20.0, gt=0)
    source_max_retries: int = Field(default=3, ge=0, le=10)
    source_backoff_seconds: float = Field(default=1.0, ge=0)
    source_backoff_max_seconds: float = Field(default=30.0, ge=0)
    store_retry_backoff_seconds: float = Field(default=0.2, ge=0)
    job_expire_days: int = Field(default=14, ge=1)
    adzuna_app_id: str | None = None
    adzuna_app_key: str | None = None


class DedupeSettings(BaseModel):
    similarity_threshold: float = Field(default=0.85, gt=0, le=1)
    title_weight: float = Field(default=0.6, ge=0, le=1)
    candidate_limit: int = Field(default=200, ge=1)


class RankingSettings(BaseModel):
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    enforce_language: bool = False
    max_workers: int = Field(default=1, ge=1, le=32)


class DiscoverySettings(BaseModel):
    score_floor: int = Field(default=5, ge=0, le=100)
    min_results: int = Field(default=20, ge=0)
    max_fetch: int = Field(default=500, ge=1)
    ranking_timeout_seconds: float = Field(default=10.0, gt=0)


class SchedulerSettings(BaseModel):
    enabled: bool = False
    hour_utc: int = Field(default=6, ge=0, le=23)


class Settings(BaseModel):
    database_path: str = DEFAULT_DB_PATH
    api_key: str | None = None
    api_tokens: dict[str, set[str]] = Field(default_factory=dict)
    cron_secret: str | None = None
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    dedupe: DedupeSettings = Field(default_factory=DedupeSettings)
    ranking: RankingSettings = Field(default_factory=RankingSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("JOBINTEL_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, set[str]] = {}
    for token, scopes_value in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if isinstance(scopes_value, str):
            scopes = {scopes_value.strip()} if scopes_value.strip() else set()
        elif isinstance(scopes_value, list):
            scopes = {
                str(scope).strip()
                for scope in scopes_value
                if isinstance(scope, str) and scope.strip()
            }
        else:
            raise ValueError("Token scopes must be a string or list of strings.")
        token_map[token] = scopes
    return token_map


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_values(mapping: dict[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field_name, env_name in mapping.items():
        raw = os.getenv(env_name, "").strip()
        if raw:
            values[field_name] = raw
    return values


def load_settings() -> Settings:
    """Build settings from JOBINTEL_* environment variables.

    Invalid values raise pydantic.ValidationError or ValueError so a
    misconfigured process fails at startup.
    """
    pipeline = _env_values(
        {
            "max_workers": "JOBINTEL_PIPELINE_MAX_WORKERS",
            "source_timeout_seconds": "JOBINTEL_SOURCE_TIMEOUT_SECONDS",
            "source_max_retries": "JOBINTEL_SOURCE_MAX_RETRIES",
            "source_backoff_seconds": "JOBINTEL_SOURCE_BACKOFF_SECONDS",
            "store_retry_backoff_seconds": "JOBINTEL_STORE_RETRY_BACKOFF_SECONDS",
            "job_expire_days": "JOBINTEL_JOB_EXPIRE_DAYS",
            "adzuna_app_id": "ADZUNA_APP_ID",
            "adzuna_app_key": "ADZUNA_APP_KEY",
        }
    )
    dedupe = _env_values({"similarity_threshold": "JOBINTEL_DEDUPE_SIMILARITY_THRESHOLD"})
    discovery = _env_values(
        {
            "score_floor": "JOBINTEL_DISCOVERY_SCORE_FLOOR",
            "min_results": "JOBINTEL_DISCOVERY_MIN_RESULTS",
            "ranking_timeout_seconds": "JOBINTEL_RANKING_TIMEOUT_SECONDS",
        }
    )
    ranking: dict[str, Any] = _env_values({"max_workers": "JOBINTEL_RANKING_MAX_WORKERS"})
    ranking["enforce_language"] = _env_flag("JOBINTEL_ENFORCE_LANGUAGE", False)
    raw_weights = os.getenv("JOBINTEL_RANKING_WEIGHTS_JSON", "").strip()
    if raw_weights:
        ranking["weights"] = json.loads(raw_weights)
    scheduler: dict[str, Any] = _env_values({"hour_utc": "JOBINTEL_SCHEDULER_HOUR_UTC"})
    scheduler["enabled"] = _env_flag("JOBINTEL_SCHEDULER_ENABLED", False)

    raw_tokens = os.getenv("JOBINTEL_API_TOKENS_JSON", "").strip()
    return Settings(
        database_path=os.getenv("JOBINTEL_DB_PATH", DEFAULT_DB_PATH),
        api_key=os.getenv("JOBINTEL_API_KEY", "").strip() or None,
        api_tokens=parse_api_tokens(raw_tokens) if raw_tokens else {},
        cron_secret=os.getenv("JOBINTEL_CRON_SECRET", "").strip() or None,
        pipeline=PipelineSettings.model_validate(pipeline),
        dedupe=DedupeSettings.model_validate(dedupe),
        ranking=RankingSettings.model_validate(ranking),
        discovery=DiscoverySettings.model_validate(discovery),
        scheduler=SchedulerSettings.model_validate(scheduler),
    )
