from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

import httpx
from common.utils import now_utc_iso, parse_iso_datetime

from jobintel.config import Settings
from jobintel.connectors import USER_AGENT, SourceConnector, build_connector
from jobintel.dedupe import Deduplicator
from jobintel.models import (
    JobSyncMetrics,
    NormalizedJob,
    PipelineRunResult,
    PipelineStats,
    RawJobPosting,
    SourceConfig,
    SourceRunResult,
    Trigger,
    UpsertOutcome,
)
from jobintel.normalizer import normalize
from jobintel.store import JobStore

LOGGER = logging.getLogger("jobintel.pipeline")

STORE_ERRORS = (sqlite3.OperationalError, sqlite3.IntegrityError)

ConnectorFactory = Callable[..., SourceConnector]


class PipelineOrchestrator:
    """Runs registered sources through fetch, normalize, dedupe and upsert.

    Sources run concurrently and fail independently; each completed source
    overwrites its JobSyncMetrics row.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        connector_factory: ConnectorFactory = build_connector,
    ) -> None:
        self.store = store
        self.settings = settings
        self.transport = transport
        self.sleep = sleep
        self.connector_factory = connector_factory
        self.deduplicator = Deduplicator(settings.dedupe)

    def run(
        self,
        *,
        trigger: Trigger = "manual",
        respect_backoff: bool = False,
        source_ids: list[str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PipelineRunResult:
        started = time.perf_counter()
        started_at = now_utc_iso()
        sources = self.store.list_source_configs(enabled_only=True)
        if source_ids is not None:
            wanted = set(source_ids)
            sources = [source for source in sources if source.source_id in wanted]

        results: list[SourceRunResult] = []
        if sources:
            workers = min(self.settings.pipeline.max_workers, len(sources))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jobintel-source") as pool:
                futures = [
                    pool.submit(
                        self.run_source,
                        source,
                        trigger=trigger,
                        respect_backoff=respect_backoff,
                        cancel_event=cancel_event,
                    )
                    for source in sources
                ]
                for source, future in zip(sources, futures, strict=True):
                    try:
                        results.append(future.result())
                    except Exception as exc:
                        LOGGER.exception(
                            json.dumps(
                                {
                                    "event": "source_sync_crashed",
                                    "source_id": source.source_id,
                                    "error": str(exc),
                                }
                            )
                        )
                        results.append(
                            SourceRunResult(
                                source_id=source.source_id,
                                trigger=trigger,
                                state="failed",
                                status="failed",
                                started_at=started_at,
                                finished_at=now_utc_iso(),
                                errors_count=1,
                                errors=[f"{source.source_id}: {exc}"],
                            )
                        )

        expired = 0
        if cancel_event is None or not cancel_event.is_set():
            expired = self.store.expire_stale_jobs(
                older_than_days=self.settings.pipeline.job_expire_days
            )

        stats = PipelineStats(
            jobs_fetched=sum(result.jobs_fetched for result in results),
            jobs_normalized=sum(result.jobs_normalized for result in results),
            jobs_created=sum(result.jobs_created for result in results),
            jobs_deduplicated=sum(result.jobs_deduplicated for result in results),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        errors = [error for result in results for error in result.errors]
        LOGGER.info(
            json.dumps(
                {
                    "event": "pipeline_complete",
                    "trigger": trigger,
                    "sources": len(results),
                    "expired_jobs": expired,
                    "errors": len(errors),
                    **stats.model_dump(),
                }
            )
        )
        return PipelineRunResult(
            success=True,
            trigger=trigger,
            started_at=started_at,
            stats=stats,
            errors=errors,
            sources=results,
            expired_jobs=expired,
        )

    def run_source(
        self,
        source: SourceConfig,
        *,
        trigger: Trigger = "manual",
        respect_backoff: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> SourceRunResult:
        result = SourceRunResult(
            source_id=source.source_id,
            trigger=trigger,
            started_at=now_utc_iso(),
        )
        if cancel_event is not None and cancel_event.is_set():
            result.state = "cancelled"
            result.status = "skipped"
            result.finished_at = now_utc_iso()
            return result

        if respect_backoff and self._in_backoff(source, result.started_at):
            backoff_seconds, next_eligible = self.store.record_source_scan_result(
                source.source_id,
                scanned_at=result.started_at,
                status="skipped",
                error=None,
            )
            result.state = "skipped"
            result.status = "skipped"
            result.backoff_seconds = backoff_seconds
            result.next_eligible_scan_at = next_eligible
            result.finished_at = now_utc_iso()
            return result

        self._advance(result, "fetching")
        try:
            with self._client() as client:
                connector = self.connector_factory(
                    source,
                    client,
                    self.settings.pipeline,
                    sleep=self.sleep,
                )
                outcome = connector.fetch()
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {"event": "source_fetch_crashed", "source_id": source.source_id, "error": str(exc)}
                )
            )
            self._record_error(result, f"{source.source_id}: {exc}")
            return self._finish(source, result, "failed")
        if outcome.error is not None:
            self._record_error(result, f"{source.source_id}: {outcome.error}")
            return self._finish(source, result, "failed")

        result.jobs_fetched = len(outcome.postings) + len(outcome.decode_errors)
        for error in outcome.decode_errors:
            self._record_error(result, error)

        self._advance(result, "normalizing")
        normalized: list[tuple[RawJobPosting, NormalizedJob]] = []
        for raw in outcome.postings:
            job, error = normalize(raw)
            if job is None:
                self._record_error(result, error or f"{raw.source}:{raw.source_job_id}: invalid")
                continue
            normalized.append((raw, job))
        result.jobs_normalized = len(normalized)

        self._advance(result, "deduping")
        for raw, job in normalized:
            try:
                upserted = self._upsert_with_retry(raw, job)
            except Exception as exc:
                LOGGER.exception(
                    json.dumps(
                        {
                            "event": "posting_upsert_crashed",
                            "source_id": raw.source,
                            "source_job_id": raw.source_job_id,
                            "error": str(exc),
                        }
                    )
                )
                self._record_error(result, f"{raw.source}:{raw.source_job_id}: {exc}")
                continue
            if upserted is None:
                self._record_error(result, f"{raw.source}:{raw.source_job_id}: store write failed")
            elif upserted.created:
                result.jobs_created += 1
            else:
                result.jobs_deduplicated += 1
        self._advance(result, "upserted")

        upserted_total = result.jobs_created + result.jobs_deduplicated
        if result.errors_count == 0:
            status = "success"
        elif upserted_total > 0:
            status = "partial"
        else:
            status = "failed"
        return self._finish(source, result, status)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.settings.pipeline.source_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            transport=self.transport,
        )

    def _upsert_with_retry(self, raw: RawJobPosting, job: NormalizedJob) -> UpsertOutcome | None:
        raw_payload = raw.raw_data.model_dump(mode="json")
        for attempt in (1, 2):
            try:
                decision = self.deduplicator.decide(job, self.store)
                return self.store.apply_dedupe_decision(job, decision, raw_payload=raw_payload)
            except STORE_ERRORS as exc:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "store_write_failed",
                            "source_id": raw.source,
                            "source_job_id": raw.source_job_id,
                            "attempt": attempt,
                            "error": str(exc),
                        }
                    )
                )
                if attempt == 1:
                    self.sleep(self.settings.pipeline.store_retry_backoff_seconds)
        return None

    def _finish(self, source: SourceConfig, result: SourceRunResult, status: str) -> SourceRunResult:
        finished_at = now_utc_iso()
        result.status = status  # type: ignore[assignment]
        last_error = result.errors[-1] if result.errors else None
        self.store.upsert_sync_metrics(
            JobSyncMetrics(
                source=source.source_id,
                last_sync_at=finished_at,
                last_sync_status=status,  # type: ignore[arg-type]
                jobs_fetched=result.jobs_fetched,
                jobs_upserted=result.jobs_created + result.jobs_deduplicated,
                duplicates_found=result.jobs_deduplicated,
                errors_count=result.errors_count,
                last_error=last_error,
            )
        )
        try:
            result.backoff_seconds, result.next_eligible_scan_at = (
                self.store.record_source_scan_result(
                    source.source_id,
                    scanned_at=finished_at,
                    status=status,
                    error=last_error,
                )
            )
        except KeyError:
            # Source was removed while it was running.
            LOGGER.warning(
                json.dumps({"event": "source_config_missing", "source_id": source.source_id})
            )
        self._advance(result, "metrics_recorded")
        result.finished_at = finished_at
        LOGGER.info(
            json.dumps(
                {
                    "event": "source_sync_complete",
                    "source_id": source.source_id,
                    "status": status,
                    "jobs_fetched": result.jobs_fetched,
                    "jobs_created": result.jobs_created,
                    "jobs_deduplicated": result.jobs_deduplicated,
                    "errors_count": result.errors_count,
                }
            )
        )
        return result

    @staticmethod
    def _record_error(result: SourceRunResult, message: str) -> None:
        result.errors_count += 1
        result.errors.append(message)

    @staticmethod
    def _advance(result: SourceRunResult, state: str) -> None:
        result.state = state
        LOGGER.debug(
            json.dumps({"event": "source_state", "source_id": result.source_id, "state": state})
        )

    @staticmethod
    def _in_backoff(source: SourceConfig, now_iso: str) -> bool:
        parsed_now = parse_iso_datetime(now_iso)
        parsed_next = parse_iso_datetime(source.next_eligible_scan_at)
        return bool(parsed_now and parsed_next and parsed_next > parsed_now)
