from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Literal

import httpx
from common.utils import now_utc_iso
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from jobintel.config import Settings, load_settings
from jobintel.discovery import ProfileNotFoundError, discover
from jobintel.models import (
    DiscoverRequest,
    DiscoverResponse,
    Job,
    JobListResponse,
    JobMergeLogEntry,
    JobSourceRecord,
    JobSyncMetrics,
    Match,
    PipelineRunResult,
    SourceConfig,
    SourceConfigUpsertRequest,
    SourceRunResult,
    UserJobProfile,
    UserJobProfilePatchRequest,
    UserJobProfileUpsertRequest,
)
from jobintel.pipeline import PipelineOrchestrator
from jobintel.ranking import RankingService
from jobintel.scheduler import DailyIngestionScheduler
from jobintel.store import JobStore

LOGGER = logging.getLogger("jobintel.api")


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = float(endpoint["latency_ms_sum"]) / int(endpoint["count"])

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def require_scope(request: Request, *, scope: str) -> None:
    token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
    if not token_map:
        return
    provided = request.headers.get("x-api-key", "")
    scopes = token_map.get(provided) if provided else None
    if scopes is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if "*" not in scopes and scope not in scopes:
        raise HTTPException(status_code=403, detail="Forbidden")


def require_clerk_id(request: Request) -> str:
    clerk_id = request.headers.get("x-clerk-id", "").strip()
    if not clerk_id:
        raise HTTPException(status_code=401, detail="Missing x-clerk-id header")
    return clerk_id


def require_cron_secret(request: Request) -> None:
    secret = request.app.state.settings.cron_secret
    if not secret:
        return
    if request.headers.get("authorization", "") != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
    settings: Settings | None = None,
    transport: httpx.BaseTransport | None = None,
) -> FastAPI:
    resolved = settings or load_settings()
    if database_path:
        resolved = resolved.model_copy(update={"database_path": database_path})

    resolved_token_map: dict[str, set[str]] = {
        token: set(scopes) for token, scopes in resolved.api_tokens.items()
    }
    if api_tokens is not None:
        resolved_token_map = {
            token: {str(scope).strip() for scope in scopes if str(scope).strip()}
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    resolved_api_key = (api_key or resolved.api_key or "").strip() or None
    if resolved_api_key:
        resolved_token_map.setdefault(resolved_api_key, set()).add("*")

    store = JobStore(database_path=resolved.database_path)
    orchestrator = PipelineOrchestrator(store, resolved, transport=transport)
    ranking = RankingService(store, resolved.ranking)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(store.connect)
        app.state.store = store
        app.state.settings = resolved
        app.state.orchestrator = orchestrator
        app.state.ranking = ranking
        app.state.auth_token_scopes = resolved_token_map
        app.state.metrics = MetricsStore()
        app.state.scheduler = None
        scheduler_task: asyncio.Task | None = None
        if resolved.scheduler.enabled:
            app.state.scheduler = DailyIngestionScheduler(
                lambda: run_in_threadpool(
                    orchestrator.run, trigger="scheduled", respect_backoff=True
                ),
                hour_utc=resolved.scheduler.hour_utc,
            )
            scheduler_task = asyncio.create_task(app.state.scheduler.run())
        try:
            yield
        finally:
            if scheduler_task:
                scheduler_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await scheduler_task
            await run_in_threadpool(store.close)

    app = FastAPI(title="Job Intelligence", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                }
            )
        )
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "jobintel"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    # Ingestion.

    @app.post("/admin/jobs/pipeline", response_model=PipelineRunResult)
    async def run_pipeline(
        request: Request,
        respect_backoff: bool = Query(default=False),
        source_id: list[str] | None = Query(default=None),
    ) -> PipelineRunResult:
        require_scope(request, scope="pipeline:run")
        return await run_in_threadpool(
            request.app.state.orchestrator.run,
            trigger="manual",
            respect_backoff=respect_backoff,
            source_ids=source_id,
        )

    @app.post("/admin/jobs/sources/{source_id}/sync", response_model=SourceRunResult)
    async def sync_source(
        source_id: str,
        request: Request,
        respect_backoff: bool = Query(default=False),
    ) -> SourceRunResult:
        require_scope(request, scope="pipeline:run")
        source = await run_in_threadpool(request.app.state.store.get_source_config, source_id)
        if source is None:
            raise HTTPException(status_code=404, detail="Unknown source_id")
        return await run_in_threadpool(
            request.app.state.orchestrator.run_source,
            source,
            trigger="manual",
            respect_backoff=respect_backoff,
        )

    @app.get("/cron/daily-job-ingestion", response_model=PipelineRunResult)
    async def daily_job_ingestion(request: Request) -> PipelineRunResult:
        require_cron_secret(request)
        return await run_in_threadpool(
            request.app.state.orchestrator.run,
            trigger="scheduled",
            respect_backoff=True,
        )

    @app.get("/admin/jobs/metrics", response_model=list[JobSyncMetrics])
    async def sync_metrics(request: Request) -> list[JobSyncMetrics]:
        require_scope(request, scope="pipeline:read")
        return await run_in_threadpool(request.app.state.store.list_sync_metrics)

    @app.post("/admin/jobs/sources", response_model=SourceConfig)
    async def upsert_source(payload: SourceConfigUpsertRequest, request: Request) -> SourceConfig:
        require_scope(request, scope="sources:write")
        return await run_in_threadpool(request.app.state.store.upsert_source_config, payload)

    @app.get("/admin/jobs/sources", response_model=list[SourceConfig])
    async def list_sources(
        request: Request,
        enabled_only: bool = Query(default=False),
    ) -> list[SourceConfig]:
        require_scope(request, scope="pipeline:read")
        return await run_in_threadpool(request.app.state.store.list_source_configs, enabled_only)

    @app.delete("/admin/jobs/sources/{source_id}")
    async def delete_source(source_id: str, request: Request) -> dict[str, bool]:
        require_scope(request, scope="sources:write")
        deleted = await run_in_threadpool(request.app.state.store.delete_source_config, source_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Unknown source_id")
        return {"deleted": True}

    @app.get("/admin/jobs/merge-log", response_model=list[JobMergeLogEntry])
    async def merge_log(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        job_id: str | None = None,
    ) -> list[JobMergeLogEntry]:
        require_scope(request, scope="pipeline:read")
        return await run_in_threadpool(
            request.app.state.store.list_merge_log,
            limit=limit,
            job_id=job_id,
        )

    # Jobs and discovery.

    @app.get("/jobs", response_model=JobListResponse)
    async def list_jobs(
        request: Request,
        limit: int = Query(default=50, ge=1, le=200),
        offset: int = Query(default=0, ge=0, le=10000),
        status: Literal["active", "expired", "removed"] | None = "active",
    ) -> JobListResponse:
        store: JobStore = request.app.state.store
        jobs = await run_in_threadpool(store.list_jobs, limit=limit, offset=offset, status=status)
        total = await run_in_threadpool(store.count_jobs, status)
        return JobListResponse(jobs=jobs, total=total)

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job(job_id: str, request: Request) -> Job:
        job = await run_in_threadpool(request.app.state.store.get_job, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Unknown job_id")
        return job

    @app.get("/jobs/{job_id}/sources", response_model=list[JobSourceRecord])
    async def get_job_sources(job_id: str, request: Request) -> list[JobSourceRecord]:
        job = await run_in_threadpool(request.app.state.store.get_job, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Unknown job_id")
        return await run_in_threadpool(request.app.state.store.list_job_sources, job_id)

    @app.post("/jobs/discover", response_model=DiscoverResponse)
    async def discover_jobs(payload: DiscoverRequest, request: Request) -> DiscoverResponse:
        clerk_id = require_clerk_id(request)
        settings: Settings = request.app.state.settings
        cancel_event = threading.Event()
        timer = threading.Timer(settings.discovery.ranking_timeout_seconds, cancel_event.set)
        timer.daemon = True
        timer.start()
        try:
            return await run_in_threadpool(
                discover,
                request.app.state.store,
                request.app.state.ranking,
                clerk_id,
                payload,
                settings.discovery,
                cancel_event=cancel_event,
            )
        except ProfileNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Unknown profile") from exc
        finally:
            timer.cancel()

    @app.get("/matches", response_model=list[Match])
    async def list_matches(
        request: Request,
        limit: int = Query(default=50, ge=1, le=200),
    ) -> list[Match]:
        clerk_id = require_clerk_id(request)
        return await run_in_threadpool(request.app.state.store.list_matches, clerk_id, limit=limit)

    @app.put("/jobs/{job_id}/saved")
    async def save_job(job_id: str, request: Request) -> dict[str, bool]:
        clerk_id = require_clerk_id(request)
        try:
            await run_in_threadpool(request.app.state.store.save_job, clerk_id, job_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown job_id") from exc
        return {"saved": True}

    @app.delete("/jobs/{job_id}/saved")
    async def unsave_job(job_id: str, request: Request) -> dict[str, bool]:
        clerk_id = require_clerk_id(request)
        removed = await run_in_threadpool(request.app.state.store.unsave_job, clerk_id, job_id)
        if not removed:
            raise HTTPException(status_code=404, detail="Job is not saved")
        return {"saved": False}

    # Profiles.

    @app.post("/profiles", response_model=UserJobProfile)
    async def upsert_profile(
        payload: UserJobProfileUpsertRequest,
        request: Request,
    ) -> UserJobProfile:
        require_scope(request, scope="profiles:write")
        return await run_in_threadpool(request.app.state.store.upsert_profile, payload)

    @app.get("/profiles/{clerk_id}", response_model=UserJobProfile)
    async def get_profile(clerk_id: str, request: Request) -> UserJobProfile:
        profile = await run_in_threadpool(request.app.state.store.get_profile, clerk_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown clerk_id")
        return profile

    @app.patch("/profiles/{clerk_id}", response_model=UserJobProfile)
    async def patch_profile(
        clerk_id: str,
        payload: UserJobProfilePatchRequest,
        request: Request,
    ) -> UserJobProfile:
        require_scope(request, scope="profiles:write")
        try:
            profile = await run_in_threadpool(
                request.app.state.store.patch_profile, clerk_id, payload
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown clerk_id")
        return profile

    @app.delete("/profiles/{clerk_id}")
    async def delete_profile(clerk_id: str, request: Request) -> dict[str, bool]:
        require_scope(request, scope="profiles:write")
        deleted = await run_in_threadpool(request.app.state.store.delete_profile, clerk_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Unknown clerk_id")
        return {"deleted": True}

    return app


app = create_app()
