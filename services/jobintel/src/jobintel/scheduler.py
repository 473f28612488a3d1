from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from jobintel.models import PipelineRunResult

LOGGER = logging.getLogger("jobintel.scheduler")

PipelineRunner = Callable[[], Awaitable[PipelineRunResult]]


def seconds_until(hour_utc: int, now: datetime) -> float:
    """Seconds from now to the next hour_utc:00 UTC, strictly in the future."""
    target = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class DailyIngestionScheduler:
    def __init__(
        self,
        run_pipeline: PipelineRunner,
        *,
        hour_utc: int = 6,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.run_pipeline = run_pipeline
        self.hour_utc = hour_utc
        self.clock = clock
        self.last_result: PipelineRunResult | None = None
        self.runs = 0

    async def run_once(self) -> PipelineRunResult | None:
        try:
            result = await self.run_pipeline()
        except Exception as exc:
            LOGGER.exception(json.dumps({"event": "scheduled_run_failed", "error": str(exc)}))
            return None
        self.runs += 1
        self.last_result = result
        LOGGER.info(
            json.dumps(
                {
                    "event": "scheduled_run_complete",
                    "jobs_created": result.stats.jobs_created,
                    "jobs_deduplicated": result.stats.jobs_deduplicated,
                    "errors": len(result.errors),
                }
            )
        )
        return result

    async def run(self) -> None:
        while True:
            delay = seconds_until(self.hour_utc, self.clock())
            LOGGER.info(json.dumps({"event": "scheduled_run_waiting", "delay_seconds": delay}))
            await asyncio.sleep(delay)
            await self.run_once()
