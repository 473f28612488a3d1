from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from common.utils import normalize_whitespace, parse_iso_datetime
from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    HttpUrl,
    field_validator,
    model_validator,
)

RemoteType = Literal["remote", "hybrid", "onsite", "unknown"]
JobStatus = Literal["active", "expired", "removed"]
SourceType = Literal["remotive", "remoteok", "adzuna", "inline_json", "json_url"]
SyncStatus = Literal["success", "partial", "failed"]
DedupeAction = Literal["create", "merge"]
DiscoveryMode = Literal["personalized", "manual_query"]
Trigger = Literal["manual", "scheduled"]

SOURCE_INLINE_JSON = "inline_json"
SOURCE_JSON_URL = "json_url"


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


def _optional_number(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip().replace(",", "")
        return stripped or None
    return value


StrList = Annotated[list[str], BeforeValidator(_none_to_list)]
OptionalNumber = Annotated[float | None, BeforeValidator(_optional_number)]


# Per-source payloads, decoded at the connector boundary.


class RemotivePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["remotive"] = "remotive"
    id: int | str
    url: str = ""
    title: str = ""
    company_name: str = ""
    category: str | None = None
    tags: StrList = Field(default_factory=list)
    job_type: str | None = None
    publication_date: str | None = None
    candidate_required_location: str | None = None
    salary: str | None = None
    description: str = ""


class RemoteOKPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["remoteok"] = "remoteok"
    id: int | str
    position: str = ""
    company: str = ""
    description: str = ""
    location: str | None = None
    tags: StrList = Field(default_factory=list)
    salary_min: OptionalNumber = None
    salary_max: OptionalNumber = None
    apply_url: str | None = None
    url: str | None = None
    date: str | None = None


class AdzunaCompany(BaseModel):
    model_config = ConfigDict(extra="ignore")

    display_name: str = ""


class AdzunaLocation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    display_name: str = ""
    area: list[str] = Field(default_factory=list)


class AdzunaPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["adzuna"] = "adzuna"
    id: int | str
    title: str = ""
    description: str = ""
    company: AdzunaCompany = Field(default_factory=AdzunaCompany)
    location: AdzunaLocation = Field(default_factory=AdzunaLocation)
    salary_min: OptionalNumber = None
    salary_max: OptionalNumber = None
    contract_type: str | None = None
    contract_time: str | None = None
    redirect_url: str = ""
    created: str | None = None
    country: str | None = None


class GenericPayload(BaseModel):
    """Posting shape accepted by inline and URL-backed JSON sources."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["generic"] = "generic"
    id: str | None = None
    external_id: str | None = None
    title: str = Field(..., min_length=1)
    description: str = ""
    requirements: str | None = None
    company: str | None = None
    company_domain: str | None = None
    location: str | None = None
    remote_type: str | None = None
    remote_region: str | None = None
    allowed_countries: list[str] | None = None
    employment_type: str | None = None
    seniority: str | None = None
    skills: StrList = Field(default_factory=list)
    salary: str | None = None
    salary_min: OptionalNumber = None
    salary_max: OptionalNumber = None
    salary_currency: str | None = None
    salary_period: str | None = None
    language: str | None = None
    apply_url: str | None = None
    posted_at: str | None = None

    @field_validator("id", "external_id", mode="before")
    @classmethod
    def stringify_identifier(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value).strip() or None


RawPayload = Annotated[
    RemotivePayload | RemoteOKPayload | AdzunaPayload | GenericPayload,
    Field(discriminator="kind"),
]


class RawJobPosting(BaseModel):
    source: str
    source_job_id: str
    source_url: str | None = None
    raw_data: RawPayload
    fetched_at: str


class NormalizedJob(BaseModel):
    source: str
    source_job_id: str
    source_url: str | None = None
    title: str
    normalized_title: str
    company_name: str
    company_key: str
    company_domain: str | None = None
    description_text: str = ""
    requirements_text: str | None = None
    skills: list[str] = Field(default_factory=list)
    job_function: str | None = None
    seniority: str | None = None
    employment_type: str | None = None
    remote_type: RemoteType = "unknown"
    remote_region_eligibility: str | None = None
    allowed_countries: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    compensation_min: float | None = None
    compensation_max: float | None = None
    compensation_currency: str | None = None
    compensation_period: str | None = None
    language: str | None = None
    apply_url: str = ""
    posted_at: str | None = None
    fetched_at: str


class Job(BaseModel):
    id: str
    dedupe_key: str
    title: str
    normalized_title: str
    company_name: str
    company_key: str = ""
    company_domain: str | None = None
    description_text: str = ""
    requirements_text: str | None = None
    skills: list[str] = Field(default_factory=list)
    job_function: str | None = None
    seniority: str | None = None
    employment_type: str | None = None
    remote_type: RemoteType = "unknown"
    remote_region_eligibility: str | None = None
    allowed_countries: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    compensation_min: float | None = None
    compensation_max: float | None = None
    compensation_currency: str | None = None
    compensation_period: str | None = None
    language: str | None = None
    apply_url: str = ""
    posted_at: str | None = None
    first_seen_at: str
    last_seen_at: str
    status: JobStatus = "active"
    source_primary: str


class JobSourceRecord(BaseModel):
    id: int
    job_id: str
    source: str
    source_job_id: str
    source_url: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    fetched_at: str
    created_at: str


class JobMergeLogEntry(BaseModel):
    id: int
    canonical_job_id: str
    merged_from_source: str
    merged_from_source_id: str
    similarity_score: float
    merge_reason: str
    merged_at: str
    created_by: str = "system"


class DedupeDecision(BaseModel):
    action: DedupeAction
    dedupe_key: str
    matched_job_id: str | None = None
    similarity_score: float = 0.0
    reason: str = "no match"


class UpsertOutcome(BaseModel):
    job_id: str
    created: bool
    merged: bool
    similarity_score: float = 0.0
    reason: str


class JobSyncMetrics(BaseModel):
    source: str
    last_sync_at: str
    last_sync_status: SyncStatus
    jobs_fetched: int = 0
    jobs_upserted: int = 0
    duplicates_found: int = 0
    errors_count: int = 0
    last_error: str | None = None


# Source registry.


class IngestedPosting(GenericPayload):
    pass


class SourceConfigUpsertRequest(BaseModel):
    source_id: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=120)
    source_type: SourceType
    enabled: bool = True
    postings: list[IngestedPosting] = Field(default_factory=list)
    url: HttpUrl | None = None
    search: str | None = None
    countries: list[str] = Field(default_factory=list)
    app_id: str | None = None
    app_key: str | None = None
    results_per_page: int = Field(default=50, ge=1, le=50)

    @model_validator(mode="after")
    def validate_source_config(self) -> SourceConfigUpsertRequest:
        if self.source_type == SOURCE_INLINE_JSON and not self.postings:
            raise ValueError("Inline source must include at least one posting.")
        if self.source_type == SOURCE_JSON_URL and self.url is None:
            raise ValueError("json_url source must include a url.")
        return self

    def config_json(self) -> str:
        if self.source_type == SOURCE_INLINE_JSON:
            postings = [posting.model_dump(exclude={"kind"}) for posting in self.postings]
            return json.dumps({"postings": postings})
        config: dict[str, Any] = {}
        if self.url is not None:
            config["url"] = str(self.url)
        if self.search:
            config["search"] = normalize_whitespace(self.search)
        if self.source_type == "adzuna":
            config["countries"] = [code.strip().lower() for code in self.countries if code.strip()]
            config["results_per_page"] = self.results_per_page
            if self.app_id:
                config["app_id"] = self.app_id
            if self.app_key:
                config["app_key"] = self.app_key
        return json.dumps(config)


class SourceConfig(BaseModel):
    source_id: str
    name: str
    source_type: SourceType
    enabled: bool
    created_at: str
    updated_at: str
    last_scan_at: str | None = None
    last_success_at: str | None = None
    last_status: str | None = None
    last_error: str | None = None
    next_eligible_scan_at: str | None = None
    consecutive_failures: int = 0
    config: dict[str, Any] = Field(default_factory=dict)


# Profiles and matches.


PROFILE_LIST_FIELDS = (
    "skills",
    "target_titles",
    "locations_allowed",
    "locations_excluded",
    "languages",
    "work_authorization_constraints",
)


class UserJobProfileUpsertRequest(BaseModel):
    clerk_id: str = Field(..., min_length=1, max_length=128)
    skills: StrList = Field(default_factory=list)
    target_titles: StrList = Field(default_factory=list)
    seniority: str | None = None
    locations_allowed: StrList = Field(default_factory=list)
    locations_excluded: StrList = Field(default_factory=list)
    languages: StrList = Field(default_factory=list)
    salary_min: float | None = Field(default=None, ge=0)
    salary_max: float | None = Field(default=None, ge=0)
    salary_currency: str = "USD"
    remote_only: bool = False
    work_authorization_constraints: StrList = Field(default_factory=list)
    profile_context_text: str | None = Field(default=None, max_length=10000)
    use_profile_context_for_matching: bool = False

    @model_validator(mode="after")
    def validate_salary_range(self) -> UserJobProfileUpsertRequest:
        if (
            self.salary_min is not None
            and self.salary_max is not None
            and self.salary_min > self.salary_max
        ):
            raise ValueError("salary_min must not exceed salary_max.")
        return self

    def config(self) -> dict[str, Any]:
        config = self.model_dump(exclude={"clerk_id"})
        for field_name in PROFILE_LIST_FIELDS:
            config[field_name] = [
                normalize_whitespace(value) for value in config[field_name] if value.strip()
            ]
        return config


class UserJobProfilePatchRequest(BaseModel):
    skills: list[str] | None = None
    target_titles: list[str] | None = None
    seniority: str | None = None
    locations_allowed: list[str] | None = None
    locations_excluded: list[str] | None = None
    languages: list[str] | None = None
    salary_min: float | None = Field(default=None, ge=0)
    salary_max: float | None = Field(default=None, ge=0)
    salary_currency: str | None = None
    remote_only: bool | None = None
    work_authorization_constraints: list[str] | None = None
    profile_context_text: str | None = Field(default=None, max_length=10000)
    use_profile_context_for_matching: bool | None = None


class UserJobProfile(BaseModel):
    clerk_id: str
    skills: StrList = Field(default_factory=list)
    target_titles: StrList = Field(default_factory=list)
    seniority: str | None = None
    locations_allowed: StrList = Field(default_factory=list)
    locations_excluded: StrList = Field(default_factory=list)
    languages: StrList = Field(default_factory=list)
    salary_min: float | None = None
    salary_max: float | None = None
    salary_currency: str = "USD"
    remote_only: bool = False
    work_authorization_constraints: StrList = Field(default_factory=list)
    profile_context_text: str | None = None
    use_profile_context_for_matching: bool = False
    created_at: str
    updated_at: str

    @field_validator("remote_only", "use_profile_context_for_matching", mode="before")
    @classmethod
    def none_to_false(cls, value: Any) -> Any:
        return False if value is None else value


class MatchReason(BaseModel):
    factor: str
    score_contribution: float
    description: str


class MatchInputs(BaseModel):
    profile_basics: bool = True
    profile_context: bool = False
    query: bool = False


class Match(BaseModel):
    user_id: str
    job_id: str
    score: int = Field(..., ge=0, le=100)
    reasons: list[MatchReason] = Field(default_factory=list)
    eligibility_passed: bool = True
    failed_checks: StrList = Field(default_factory=list)
    inputs_used: MatchInputs = Field(default_factory=MatchInputs)
    posted_at: str | None = None
    updated_at: str | None = None


class EligibilityResult(BaseModel):
    passed: bool
    failed_checks: StrList = Field(default_factory=list)


class JobSearchFilters(BaseModel):
    remote_type: Annotated[list[RemoteType], BeforeValidator(_none_to_list)] = Field(
        default_factory=list
    )
    seniority: StrList = Field(default_factory=list)
    languages: StrList = Field(default_factory=list)
    posted_since: str | None = None
    sources: StrList = Field(default_factory=list)

    @field_validator("posted_since")
    @classmethod
    def validate_posted_since(cls, value: str | None) -> str | None:
        if value and parse_iso_datetime(value) is None:
            raise ValueError("posted_since must be an ISO-8601 datetime string.")
        return value


class RankingInputs(BaseModel):
    profile: UserJobProfile
    query: str | None = None
    use_profile_context: bool = False


class DiscoverRequest(BaseModel):
    mode: DiscoveryMode = "personalized"
    query: str | None = Field(default=None, max_length=200)
    use_profile_context: bool | None = None
    filters: JobSearchFilters = Field(default_factory=JobSearchFilters)
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0, le=10000)
    exclude_saved: bool = False
    include_ineligible: bool = False

    @model_validator(mode="after")
    def validate_query(self) -> DiscoverRequest:
        if self.query is not None:
            self.query = normalize_whitespace(self.query) or None
        if self.mode == "manual_query" and not self.query:
            raise ValueError("manual_query mode requires a non-empty query.")
        return self


class DiscoveredJob(Job):
    match_percentage: int | None = None
    match_reasons: list[MatchReason] = Field(default_factory=list)
    eligibility_passed: bool | None = None
    is_saved: bool = False


class DiscoverResponse(BaseModel):
    jobs: list[DiscoveredJob]
    mode: DiscoveryMode
    total: int
    ranked: bool
    floor_relaxed: bool = False
    profile_context_used: bool = False


# Pipeline results.


class SourceRunResult(BaseModel):
    source_id: str
    trigger: Trigger
    state: str = "pending"
    status: Literal["success", "partial", "failed", "skipped"] = "success"
    started_at: str
    finished_at: str | None = None
    jobs_fetched: int = 0
    jobs_normalized: int = 0
    jobs_created: int = 0
    jobs_deduplicated: int = 0
    errors_count: int = 0
    errors: list[str] = Field(default_factory=list)
    backoff_seconds: int = 0
    next_eligible_scan_at: str | None = None


class PipelineStats(BaseModel):
    jobs_fetched: int = 0
    jobs_normalized: int = 0
    jobs_created: int = 0
    jobs_deduplicated: int = 0
    duration_ms: int = 0


class PipelineRunResult(BaseModel):
    success: bool = True
    trigger: Trigger
    started_at: str
    stats: PipelineStats
    errors: list[str] = Field(default_factory=list)
    sources: list[SourceRunResult] = Field(default_factory=list)
    expired_jobs: int = 0


# API responses.


class JobListResponse(BaseModel):
    jobs: list[Job]
    total: int
