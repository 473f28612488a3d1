from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso, parse_iso_datetime

from jobintel.models import (
    DedupeDecision,
    Job,
    JobMergeLogEntry,
    JobSourceRecord,
    JobSyncMetrics,
    Match,
    MatchInputs,
    MatchReason,
    NormalizedJob,
    SourceConfig,
    SourceConfigUpsertRequest,
    UpsertOutcome,
    UserJobProfile,
    UserJobProfilePatchRequest,
    UserJobProfileUpsertRequest,
)

JOB_COLUMNS = (
    "id",
    "dedupe_key",
    "normalized_title",
    "title",
    "company_name",
    "company_key",
    "company_domain",
    "description_text",
    "requirements_text",
    "skills_json",
    "job_function",
    "seniority",
    "employment_type",
    "remote_type",
    "remote_region_eligibility",
    "allowed_countries_json",
    "locations_json",
    "compensation_min",
    "compensation_max",
    "compensation_currency",
    "compensation_period",
    "language",
    "apply_url",
    "posted_at",
    "first_seen_at",
    "last_seen_at",
    "status",
    "source_primary",
)
JOB_SELECT = "SELECT " + ", ".join(JOB_COLUMNS) + " FROM jobs"

SOURCE_CONFIG_SELECT = """
    SELECT
        source_id,
        name,
        source_type,
        config_json,
        enabled,
        created_at,
        updated_at,
        last_scan_at,
        last_success_at,
        last_status,
        last_error,
        next_eligible_scan_at,
        consecutive_failures
    FROM source_configs
"""

MAX_BACKOFF_SECONDS = 3600


def backoff_seconds_for(failures: int) -> int:
    return min(60 * (2 ** max(failures - 1, 0)), MAX_BACKOFF_SECONDS)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class JobStore:
    """SQLite-backed persistence for jobs, provenance, profiles and matches.

    Every public method takes the store lock; multi-statement writes run in
    a single transaction so the dedupe_key uniqueness holds under concurrent
    pipeline workers.
    """

    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    dedupe_key TEXT NOT NULL UNIQUE,
                    normalized_title TEXT NOT NULL,
                    title TEXT NOT NULL,
                    company_name TEXT NOT NULL,
                    company_key TEXT NOT NULL DEFAULT '',
                    company_domain TEXT,
                    description_text TEXT NOT NULL DEFAULT '',
                    requirements_text TEXT,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    job_function TEXT,
                    seniority TEXT,
                    employment_type TEXT,
                    remote_type TEXT NOT NULL DEFAULT 'unknown',
                    remote_region_eligibility TEXT,
                    allowed_countries_json TEXT NOT NULL DEFAULT '[]',
                    locations_json TEXT NOT NULL DEFAULT '[]',
                    compensation_min REAL,
                    compensation_max REAL,
                    compensation_currency TEXT,
                    compensation_period TEXT,
                    language TEXT,
                    apply_url TEXT NOT NULL DEFAULT '',
                    posted_at TEXT,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    source_primary TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_company_key ON jobs(company_key);
                CREATE INDEX IF NOT EXISTS idx_jobs_status_posted ON jobs(status, posted_at);

                CREATE TABLE IF NOT EXISTS job_sources (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    source TEXT NOT NULL,
                    source_job_id TEXT NOT NULL,
                    source_url TEXT,
                    raw_payload_json TEXT NOT NULL DEFAULT '{}',
                    fetched_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(source, source_job_id)
                );

                CREATE TABLE IF NOT EXISTS job_merge_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    canonical_job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    merged_from_source TEXT NOT NULL,
                    merged_from_source_id TEXT NOT NULL,
                    similarity_score REAL NOT NULL,
                    merge_reason TEXT NOT NULL,
                    merged_at TEXT NOT NULL,
                    created_by TEXT NOT NULL DEFAULT 'system'
                );

                CREATE TABLE IF NOT EXISTS job_sync_metrics (
                    source TEXT PRIMARY KEY,
                    last_sync_at TEXT NOT NULL,
                    last_sync_status TEXT NOT NULL,
                    jobs_fetched INTEGER NOT NULL DEFAULT 0,
                    jobs_upserted INTEGER NOT NULL DEFAULT 0,
                    duplicates_found INTEGER NOT NULL DEFAULT 0,
                    errors_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS source_configs (
                    source_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    config_json TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_scan_at TEXT,
                    last_success_at TEXT,
                    last_status TEXT,
                    last_error TEXT,
                    next_eligible_scan_at TEXT,
                    consecutive_failures INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS user_job_profiles (
                    clerk_id TEXT PRIMARY KEY,
                    config_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS matches (
                    user_id TEXT NOT NULL,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    score INTEGER NOT NULL,
                    reasons_json TEXT NOT NULL,
                    eligibility_passed INTEGER NOT NULL DEFAULT 1,
                    failed_checks_json TEXT NOT NULL DEFAULT '[]',
                    inputs_used_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, job_id)
                );

                CREATE TABLE IF NOT EXISTS saved_jobs (
                    clerk_id TEXT NOT NULL,
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    saved_at TEXT NOT NULL,
                    PRIMARY KEY (clerk_id, job_id)
                );
                """
            )
            self._ensure_columns(
                "jobs",
                {
                    "company_key": "TEXT NOT NULL DEFAULT ''",
                    "requirements_text": "TEXT",
                    "job_function": "TEXT",
                },
            )
            self._ensure_columns(
                "source_configs",
                {
                    "last_success_at": "TEXT",
                    "next_eligible_scan_at": "TEXT",
                    "consecutive_failures": "INTEGER NOT NULL DEFAULT 0",
                },
            )
            self._connection.commit()

    def _ensure_columns(self, table: str, required_definitions: dict[str, str]) -> None:
        column_rows = self.connection.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row["name"] for row in column_rows}
        for column_name, definition in required_definitions.items():
            if column_name in existing:
                continue
            self.connection.execute(f"ALTER TABLE {table} ADD COLUMN {column_name} {definition}")

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    # Canonical jobs and provenance.

    def find_job_id_by_source_record(self, source: str, source_job_id: str) -> str | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT job_id FROM job_sources WHERE source = ? AND source_job_id = ?",
                (source, source_job_id),
            ).fetchone()
            return row["job_id"] if row else None

    def find_job_id_by_dedupe_key(self, dedupe_key: str) -> str | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT id FROM jobs WHERE dedupe_key = ?",
                (dedupe_key,),
            ).fetchone()
            return row["id"] if row else None

    def list_fuzzy_candidates(
        self,
        *,
        company_key: str,
        company_domain: str | None,
        limit: int,
    ) -> list[Job]:
        with self._lock:
            rows = self.connection.execute(
                JOB_SELECT
                + """
                WHERE status = 'active'
                  AND (company_key = ? OR (company_domain IS NOT NULL AND company_domain = ?))
                ORDER BY last_seen_at DESC, id
                LIMIT ?
                """,
                (company_key, company_domain or "", limit),
            ).fetchall()
            return [self._to_job(row) for row in rows]

    def apply_dedupe_decision(
        self,
        job: NormalizedJob,
        decision: DedupeDecision,
        *,
        raw_payload: dict[str, Any],
    ) -> UpsertOutcome:
        """Persist a create or merge atomically.

        A create that loses the dedupe_key race becomes a merge into the
        winner instead of a second canonical job.
        """
        with self._lock:
            now = now_utc_iso()
            try:
                outcome = self._apply_decision(job, decision, raw_payload, now)
                self.connection.commit()
            except sqlite3.Error:
                self.connection.rollback()
                raise
            return outcome

    def _apply_decision(
        self,
        job: NormalizedJob,
        decision: DedupeDecision,
        raw_payload: dict[str, Any],
        now: str,
    ) -> UpsertOutcome:
        if decision.action == "create":
            job_id = str(uuid.uuid4())
            cursor = self.connection.execute(
                f"""
                INSERT INTO jobs ({", ".join(JOB_COLUMNS)})
                VALUES ({", ".join("?" for _ in JOB_COLUMNS)})
                ON CONFLICT(dedupe_key) DO NOTHING
                """,
                (
                    job_id,
                    decision.dedupe_key,
                    job.normalized_title,
                    job.title,
                    job.company_name,
                    job.company_key,
                    job.company_domain,
                    job.description_text,
                    job.requirements_text,
                    json.dumps(job.skills),
                    job.job_function,
                    job.seniority,
                    job.employment_type,
                    job.remote_type,
                    job.remote_region_eligibility,
                    json.dumps(job.allowed_countries),
                    json.dumps(job.locations),
                    job.compensation_min,
                    job.compensation_max,
                    job.compensation_currency,
                    job.compensation_period,
                    job.language,
                    job.apply_url,
                    job.posted_at,
                    now,
                    now,
                    "active",
                    job.source,
                ),
            )
            if cursor.rowcount == 1:
                self._insert_source_row(job_id, job, raw_payload, now)
                return UpsertOutcome(job_id=job_id, created=True, merged=False, reason="new job")
            winner_id = self.find_job_id_by_dedupe_key(decision.dedupe_key)
            if winner_id is None:
                raise sqlite3.IntegrityError(f"dedupe_key vanished: {decision.dedupe_key}")
            return self._merge_into(winner_id, job, raw_payload, now, 1.0, "same dedupe_key")

        if decision.matched_job_id is None:
            raise ValueError("merge decision requires matched_job_id")
        return self._merge_into(
            decision.matched_job_id,
            job,
            raw_payload,
            now,
            decision.similarity_score,
            decision.reason,
        )

    def _merge_into(
        self,
        job_id: str,
        job: NormalizedJob,
        raw_payload: dict[str, Any],
        now: str,
        similarity_score: float,
        reason: str,
    ) -> UpsertOutcome:
        existing = self.connection.execute(
            "SELECT id, job_id FROM job_sources WHERE source = ? AND source_job_id = ?",
            (job.source, job.source_job_id),
        ).fetchone()

        if existing is not None:
            # Re-reported record: refresh timestamps only.
            self.connection.execute(
                """
                UPDATE job_sources
                SET fetched_at = ?, raw_payload_json = ?, source_url = ?
                WHERE id = ?
                """,
                (job.fetched_at, json.dumps(raw_payload), job.source_url, existing["id"]),
            )
            self._touch_job(existing["job_id"], now)
            return UpsertOutcome(
                job_id=existing["job_id"],
                created=False,
                merged=False,
                similarity_score=1.0,
                reason="same source record",
            )

        self._insert_source_row(job_id, job, raw_payload, now)
        self.connection.execute(
            """
            INSERT INTO job_merge_log (
                canonical_job_id,
                merged_from_source,
                merged_from_source_id,
                similarity_score,
                merge_reason,
                merged_at,
                created_by
            )
            VALUES (?, ?, ?, ?, ?, ?, 'system')
            """,
            (job_id, job.source, job.source_job_id, similarity_score, reason, now),
        )
        self._touch_job(job_id, now)
        return UpsertOutcome(
            job_id=job_id,
            created=False,
            merged=True,
            similarity_score=similarity_score,
            reason=reason,
        )

    def _touch_job(self, job_id: str, now: str) -> None:
        self.connection.execute(
            "UPDATE jobs SET last_seen_at = ?, status = 'active' WHERE id = ?",
            (now, job_id),
        )

    def _insert_source_row(
        self,
        job_id: str,
        job: NormalizedJob,
        raw_payload: dict[str, Any],
        now: str,
    ) -> None:
        self.connection.execute(
            """
            INSERT INTO job_sources (
                job_id,
                source,
                source_job_id,
                source_url,
                raw_payload_json,
                fetched_at,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                job.source,
                job.source_job_id,
                job.source_url,
                json.dumps(raw_payload),
                job.fetched_at,
                now,
            ),
        )

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            row = self.connection.execute(JOB_SELECT + " WHERE id = ?", (job_id,)).fetchone()
            return self._to_job(row) if row else None

    def get_job_or_raise(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(f"Unknown job_id: {job_id}")
        return job

    def list_jobs(self, *, limit: int, offset: int = 0, status: str | None = None) -> list[Job]:
        with self._lock:
            query = JOB_SELECT
            params: list[Any] = []
            if status:
                query += " WHERE status = ?"
                params.append(status)
            query += " ORDER BY COALESCE(posted_at, first_seen_at) DESC, id LIMIT ? OFFSET ?"
            params.extend([limit, offset])
            rows = self.connection.execute(query, tuple(params)).fetchall()
            return [self._to_job(row) for row in rows]

    def count_jobs(self, status: str | None = None) -> int:
        with self._lock:
            if status:
                row = self.connection.execute(
                    "SELECT COUNT(*) AS total FROM jobs WHERE status = ?", (status,)
                ).fetchone()
            else:
                row = self.connection.execute("SELECT COUNT(*) AS total FROM jobs").fetchone()
            return int(row["total"])

    def search_active_jobs(
        self,
        *,
        remote_types: list[str] | None = None,
        seniorities: list[str] | None = None,
        languages: list[str] | None = None,
        sources: list[str] | None = None,
        posted_since: str | None = None,
        text_query: str | None = None,
        limit: int = 500,
    ) -> list[Job]:
        """Cheap SQL-side filters run before ranking. Unknown language passes."""
        filters = ["status = 'active'"]
        params: list[Any] = []
        if remote_types:
            filters.append(f"remote_type IN ({', '.join('?' for _ in remote_types)})")
            params.extend(remote_types)
        if seniorities:
            filters.append(f"seniority IN ({', '.join('?' for _ in seniorities)})")
            params.extend(seniorities)
        if languages:
            filters.append(
                f"(language IS NULL OR language IN ({', '.join('?' for _ in languages)}))"
            )
            params.extend(languages)
        if sources:
            filters.append(
                "EXISTS (SELECT 1 FROM job_sources s WHERE s.job_id = jobs.id "
                f"AND s.source IN ({', '.join('?' for _ in sources)}))"
            )
            params.extend(sources)
        if posted_since:
            filters.append("COALESCE(posted_at, first_seen_at) >= ?")
            params.append(posted_since)
        if text_query:
            pattern = f"%{_escape_like(text_query.lower())}%"
            filters.append(
                "(LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(company_name) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        query = (
            JOB_SELECT
            + " WHERE "
            + " AND ".join(filters)
            + " ORDER BY COALESCE(posted_at, first_seen_at) DESC, id LIMIT ?"
        )
        params.append(limit)
        with self._lock:
            rows = self.connection.execute(query, tuple(params)).fetchall()
            return [self._to_job(row) for row in rows]

    def list_job_sources(self, job_id: str) -> list[JobSourceRecord]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT
                    id,
                    job_id,
                    source,
                    source_job_id,
                    source_url,
                    raw_payload_json,
                    fetched_at,
                    created_at
                FROM job_sources
                WHERE job_id = ?
                ORDER BY id
                """,
                (job_id,),
            ).fetchall()
            return [
                JobSourceRecord(
                    id=row["id"],
                    job_id=row["job_id"],
                    source=row["source"],
                    source_job_id=row["source_job_id"],
                    source_url=row["source_url"],
                    raw_payload=json.loads(row["raw_payload_json"] or "{}"),
                    fetched_at=row["fetched_at"],
                    created_at=row["created_at"],
                )
                for row in rows
            ]

    def list_merge_log(self, *, limit: int, job_id: str | None = None) -> list[JobMergeLogEntry]:
        with self._lock:
            query = """
                SELECT
                    id,
                    canonical_job_id,
                    merged_from_source,
                    merged_from_source_id,
                    similarity_score,
                    merge_reason,
                    merged_at,
                    created_by
                FROM job_merge_log
            """
            params: list[Any] = []
            if job_id:
                query += " WHERE canonical_job_id = ?"
                params.append(job_id)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            rows = self.connection.execute(query, tuple(params)).fetchall()
            return [JobMergeLogEntry(**dict(row)) for row in rows]

    def expire_stale_jobs(self, *, older_than_days: int, now_iso: str | None = None) -> int:
        now = parse_iso_datetime(now_iso or now_utc_iso())
        if now is None:
            raise ValueError(f"Invalid timestamp: {now_iso}")
        cutoff = (now - timedelta(days=older_than_days)).isoformat()
        with self._lock:
            cursor = self.connection.execute(
                "UPDATE jobs SET status = 'expired' WHERE status = 'active' AND last_seen_at < ?",
                (cutoff,),
            )
            self.connection.commit()
            return cursor.rowcount

    # Sync metrics.

    def upsert_sync_metrics(self, metrics: JobSyncMetrics) -> JobSyncMetrics:
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO job_sync_metrics (
                    source,
                    last_sync_at,
                    last_sync_status,
                    jobs_fetched,
                    jobs_upserted,
                    duplicates_found,
                    errors_count,
                    last_error,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at,
                    last_sync_status = excluded.last_sync_status,
                    jobs_fetched = excluded.jobs_fetched,
                    jobs_upserted = excluded.jobs_upserted,
                    duplicates_found = excluded.duplicates_found,
                    errors_count = excluded.errors_count,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (
                    metrics.source,
                    metrics.last_sync_at,
                    metrics.last_sync_status,
                    metrics.jobs_fetched,
                    metrics.jobs_upserted,
                    metrics.duplicates_found,
                    metrics.errors_count,
                    metrics.last_error,
                    now_utc_iso(),
                ),
            )
            self.connection.commit()
            return metrics

    def list_sync_metrics(self) -> list[JobSyncMetrics]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT
                    source,
                    last_sync_at,
                    last_sync_status,
                    jobs_fetched,
                    jobs_upserted,
                    duplicates_found,
                    errors_count,
                    last_error
                FROM job_sync_metrics
                ORDER BY source
                """
            ).fetchall()
            return [JobSyncMetrics(**dict(row)) for row in rows]

    # Source registry.

    def upsert_source_config(self, payload: SourceConfigUpsertRequest) -> SourceConfig:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO source_configs (
                    source_id,
                    name,
                    source_type,
                    config_json,
                    enabled,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    name = excluded.name,
                    source_type = excluded.source_type,
                    config_json = excluded.config_json,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at
                """,
                (
                    payload.source_id,
                    payload.name,
                    payload.source_type,
                    payload.config_json(),
                    int(payload.enabled),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_source_config_or_raise(payload.source_id)

    def get_source_config_or_raise(self, source_id: str) -> SourceConfig:
        source = self.get_source_config(source_id)
        if source is None:
            raise KeyError(f"Unknown source_id: {source_id}")
        return source

    def get_source_config(self, source_id: str) -> SourceConfig | None:
        with self._lock:
            row = self.connection.execute(
                SOURCE_CONFIG_SELECT + " WHERE source_id = ?",
                (source_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_source_config(row)

    def list_source_configs(self, enabled_only: bool = False) -> list[SourceConfig]:
        with self._lock:
            query = SOURCE_CONFIG_SELECT
            if enabled_only:
                query += " WHERE enabled = 1"
            query += " ORDER BY source_id"
            rows = self.connection.execute(query).fetchall()
            return [self._to_source_config(row) for row in rows]

    def delete_source_config(self, source_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM source_configs WHERE source_id = ?",
                (source_id,),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def record_source_scan_result(
        self,
        source_id: str,
        *,
        scanned_at: str,
        status: str,
        error: str | None,
    ) -> tuple[int, str | None]:
        """Update scan health and return (backoff_seconds, next_eligible_scan_at)."""
        with self._lock:
            row = self.connection.execute(
                """
                SELECT consecutive_failures, next_eligible_scan_at, last_error
                FROM source_configs
                WHERE source_id = ?
                """,
                (source_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Unknown source_id: {source_id}")

            previous_failures = int(row["consecutive_failures"] or 0)
            backoff_seconds = 0
            next_eligible_scan_at: str | None = None
            last_success_at: str | None = None
            failure_count = previous_failures
            last_error = error

            if status in ("success", "partial"):
                failure_count = 0
                last_success_at = scanned_at
                last_error = error if status == "partial" else None
            elif status == "failed":
                failure_count = previous_failures + 1
                backoff_seconds = backoff_seconds_for(failure_count)
                next_eligible = datetime.fromisoformat(scanned_at) + timedelta(
                    seconds=backoff_seconds
                )
                next_eligible_scan_at = next_eligible.isoformat()
            elif status == "skipped":
                next_eligible_scan_at = row["next_eligible_scan_at"]
                last_error = row["last_error"]
                parsed_now = parse_iso_datetime(scanned_at)
                parsed_next = parse_iso_datetime(next_eligible_scan_at)
                if parsed_now and parsed_next:
                    backoff_seconds = max(int((parsed_next - parsed_now).total_seconds()), 0)

            self.connection.execute(
                """
                UPDATE source_configs
                SET
                    last_scan_at = ?,
                    last_success_at = COALESCE(?, last_success_at),
                    last_status = ?,
                    last_error = ?,
                    next_eligible_scan_at = ?,
                    consecutive_failures = ?,
                    updated_at = ?
                WHERE source_id = ?
                """,
                (
                    scanned_at,
                    last_success_at,
                    status,
                    last_error,
                    next_eligible_scan_at,
                    failure_count,
                    now_utc_iso(),
                    source_id,
                ),
            )
            self.connection.commit()
            return backoff_seconds, next_eligible_scan_at

    # Profiles.

    def upsert_profile(self, payload: UserJobProfileUpsertRequest) -> UserJobProfile:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO user_job_profiles (clerk_id, config_json, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(clerk_id) DO UPDATE SET
                    config_json = excluded.config_json,
                    updated_at = excluded.updated_at
                """,
                (payload.clerk_id, json.dumps(payload.config()), now, now),
            )
            self.connection.commit()
            return self.get_profile_or_raise(payload.clerk_id)

    def patch_profile(
        self,
        clerk_id: str,
        patch: UserJobProfilePatchRequest,
    ) -> UserJobProfile | None:
        with self._lock:
            current = self.get_profile(clerk_id)
            if current is None:
                return None
            merged = current.model_dump(exclude={"created_at", "updated_at"})
            merged.update(patch.model_dump(exclude_unset=True))
            return self.upsert_profile(UserJobProfileUpsertRequest.model_validate(merged))

    def get_profile_or_raise(self, clerk_id: str) -> UserJobProfile:
        profile = self.get_profile(clerk_id)
        if profile is None:
            raise KeyError(f"Unknown clerk_id: {clerk_id}")
        return profile

    def get_profile(self, clerk_id: str) -> UserJobProfile | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT clerk_id, config_json, created_at, updated_at
                FROM user_job_profiles
                WHERE clerk_id = ?
                """,
                (clerk_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_profile(row)

    def delete_profile(self, clerk_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM user_job_profiles WHERE clerk_id = ?",
                (clerk_id,),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    # Matches.

    def upsert_matches(self, matches: list[Match]) -> int:
        if not matches:
            return 0
        with self._lock:
            now = now_utc_iso()
            self.connection.executemany(
                """
                INSERT INTO matches (
                    user_id,
                    job_id,
                    score,
                    reasons_json,
                    eligibility_passed,
                    failed_checks_json,
                    inputs_used_json,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, job_id) DO UPDATE SET
                    score = excluded.score,
                    reasons_json = excluded.reasons_json,
                    eligibility_passed = excluded.eligibility_passed,
                    failed_checks_json = excluded.failed_checks_json,
                    inputs_used_json = excluded.inputs_used_json,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        match.user_id,
                        match.job_id,
                        match.score,
                        json.dumps([reason.model_dump() for reason in match.reasons]),
                        int(match.eligibility_passed),
                        json.dumps(match.failed_checks),
                        match.inputs_used.model_dump_json(),
                        now,
                        now,
                    )
                    for match in matches
                ],
            )
            self.connection.commit()
            return len(matches)

    def list_matches(self, user_id: str, *, limit: int) -> list[Match]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT
                    m.user_id,
                    m.job_id,
                    m.score,
                    m.reasons_json,
                    m.eligibility_passed,
                    m.failed_checks_json,
                    m.inputs_used_json,
                    m.updated_at,
                    j.posted_at
                FROM matches m
                JOIN jobs j ON j.id = m.job_id
                WHERE m.user_id = ?
                ORDER BY m.score DESC, m.updated_at DESC, m.job_id
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
            return [
                Match(
                    user_id=row["user_id"],
                    job_id=row["job_id"],
                    score=row["score"],
                    reasons=[MatchReason(**item) for item in json.loads(row["reasons_json"])],
                    eligibility_passed=bool(row["eligibility_passed"]),
                    failed_checks=json.loads(row["failed_checks_json"]),
                    inputs_used=MatchInputs.model_validate_json(row["inputs_used_json"]),
                    posted_at=row["posted_at"],
                    updated_at=row["updated_at"],
                )
                for row in rows
            ]

    # Saved jobs.

    def save_job(self, clerk_id: str, job_id: str) -> None:
        with self._lock:
            self.get_job_or_raise(job_id)
            self.connection.execute(
                """
                INSERT INTO saved_jobs (clerk_id, job_id, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(clerk_id, job_id) DO NOTHING
                """,
                (clerk_id, job_id, now_utc_iso()),
            )
            self.connection.commit()

    def unsave_job(self, clerk_id: str, job_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM saved_jobs WHERE clerk_id = ? AND job_id = ?",
                (clerk_id, job_id),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def list_saved_job_ids(self, clerk_id: str) -> set[str]:
        with self._lock:
            rows = self.connection.execute(
                "SELECT job_id FROM saved_jobs WHERE clerk_id = ?",
                (clerk_id,),
            ).fetchall()
            return {row["job_id"] for row in rows}

    # Row converters.

    def _to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            dedupe_key=row["dedupe_key"],
            title=row["title"],
            normalized_title=row["normalized_title"],
            company_name=row["company_name"],
            company_key=row["company_key"] or "",
            company_domain=row["company_domain"],
            description_text=row["description_text"] or "",
            requirements_text=row["requirements_text"],
            skills=json.loads(row["skills_json"] or "[]"),
            job_function=row["job_function"],
            seniority=row["seniority"],
            employment_type=row["employment_type"],
            remote_type=row["remote_type"] or "unknown",
            remote_region_eligibility=row["remote_region_eligibility"],
            allowed_countries=json.loads(row["allowed_countries_json"] or "[]"),
            locations=json.loads(row["locations_json"] or "[]"),
            compensation_min=row["compensation_min"],
            compensation_max=row["compensation_max"],
            compensation_currency=row["compensation_currency"],
            compensation_period=row["compensation_period"],
            language=row["language"],
            apply_url=row["apply_url"] or "",
            posted_at=row["posted_at"],
            first_seen_at=row["first_seen_at"],
            last_seen_at=row["last_seen_at"],
            status=row["status"],
            source_primary=row["source_primary"],
        )

    def _to_source_config(self, row: sqlite3.Row) -> SourceConfig:
        config: dict[str, Any] = json.loads(row["config_json"])
        return SourceConfig(
            source_id=row["source_id"],
            name=row["name"],
            source_type=row["source_type"],
            enabled=bool(row["enabled"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_scan_at=row["last_scan_at"],
            last_success_at=row["last_success_at"],
            last_status=row["last_status"],
            last_error=row["last_error"],
            next_eligible_scan_at=row["next_eligible_scan_at"],
            consecutive_failures=int(row["consecutive_failures"] or 0),
            config=config,
        )

    def _to_profile(self, row: sqlite3.Row) -> UserJobProfile:
        config: dict[str, Any] = json.loads(row["config_json"])
        return UserJobProfile(
            clerk_id=row["clerk_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            **config,
        )
