"""Job dispatch for an external once-a-minute trigger.

There is no internal timer loop. Whatever drives the process (cron, a
container scheduler) invokes one tick per minute; due_jobs decides which
jobs that minute owns and JobRunner executes them with retry.

Default grid (6HOUR rounds starting 05/11/17/23 UTC):
    hh-1:50  create   (creation lead time before a start hour)
    hh:00    finalize, then open
    hh:01    lock
    every    recovery
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from rounds.exceptions import RoundEngineError
from rounds.logging import get_logger, job_context
from rounds.models import now_ms

if TYPE_CHECKING:
    from rounds.config import CronSettings
    from rounds.prices import PriceSource
    from rounds.service import RoundService

logger = get_logger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

JOBS = ("create", "open", "lock", "finalize", "settle", "recovery")


def next_aligned_start(now: int, start_hours_utc: Sequence[int]) -> int:
    """First start-grid slot at or after ``now`` (epoch ms, UTC)."""
    day_start = now - now % DAY_MS
    candidates = [
        day_start + day * DAY_MS + hour * HOUR_MS
        for day in (0, 1)
        for hour in sorted(start_hours_utc)
    ]
    return min(t for t in candidates if t >= now)


def _is_start_slot(t: int, start_hours_utc: Sequence[int]) -> bool:
    return t % HOUR_MS == 0 and (t % DAY_MS) // HOUR_MS in start_hours_utc


def due_jobs(
    now: int,
    start_hours_utc: Sequence[int],
    creation_lead_time_ms: int = 10 * MINUTE_MS,
) -> list[str]:
    """Jobs owned by the minute containing ``now``, in execution order.

    finalize always precedes open so the previous round is closed out before
    the next one starts taking bets.
    """
    tick = now - now % MINUTE_MS
    jobs: list[str] = []
    if _is_start_slot(tick + creation_lead_time_ms, start_hours_utc):
        jobs.append("create")
    if _is_start_slot(tick, start_hours_utc):
        jobs.extend(["finalize", "open"])
    if _is_start_slot(tick - MINUTE_MS, start_hours_utc):
        jobs.append("lock")
    jobs.append("recovery")
    return jobs


@dataclass
class TickReport:
    """What one tick did: a result per job that ran, an error per job that failed."""

    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class JobRunner:
    """Runs scheduler jobs against the round service with retry.

    Domain errors (RoundEngineError) are final and raised immediately.
    Anything else (storage errors, price feed outages) is retried
    ``retry_count`` times in total with linear backoff.

    Args:
        service: The round service.
        price_source: Price snapshots for open and finalize.
        settings: Retry policy.
        start_hours_utc: Start-hour grid used by tick().
        creation_lead_time_ms: How long before a start slot create runs.
        clock: Returns the current epoch milliseconds.
    """

    def __init__(
        self,
        service: RoundService,
        price_source: PriceSource,
        settings: CronSettings,
        start_hours_utc: Sequence[int],
        creation_lead_time_ms: int = 10 * MINUTE_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._service = service
        self._price_source = price_source
        self._settings = settings
        self._start_hours = list(start_hours_utc)
        self._creation_lead_time_ms = creation_lead_time_ms
        self._clock = clock

    async def run(self, job: str, round_id: str | None = None) -> Any:
        """Run one job by name, retrying transient failures."""
        if job not in JOBS:
            raise ValueError(f"Unknown job: {job}")
        if job == "settle" and not round_id:
            raise ValueError("settle requires a round id")

        fields = {"round_id": round_id} if round_id else {}
        with job_context(job, **fields):
            return await self._with_retry(job, lambda: self._dispatch(job, round_id))

    async def tick(self, now: int | None = None) -> TickReport:
        """Run every job due at ``now``. One job failing does not stop the rest."""
        now = self._clock() if now is None else now
        jobs = due_jobs(now, self._start_hours, self._creation_lead_time_ms)
        logger.info("tick_started", now=now, jobs=jobs)

        report = TickReport()
        for job in jobs:
            try:
                report.results[job] = await self.run(job)
            except Exception as exc:
                report.errors[job] = str(exc)
                logger.error("job_failed", job=job, error=str(exc), exc_info=True)

        logger.info("tick_complete", ran=list(report.results), failed=list(report.errors))
        return report

    async def _dispatch(self, job: str, round_id: str | None) -> Any:
        if job == "create":
            return await self._service.create_next_scheduled_round()
        if job == "open":
            return await self._service.open_round(await self._price_source.fetch_snapshot())
        if job == "lock":
            return await self._service.lock_round()
        if job == "finalize":
            return await self._service.finalize_round(await self._price_source.fetch_snapshot())
        if job == "settle":
            assert round_id is not None
            return await self._service.settle_round(round_id)
        return await self._service.recovery_rounds()

    async def _with_retry(self, job: str, call: Callable[[], Awaitable[Any]]) -> Any:
        attempts = max(1, self._settings.retry_count)
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                return await call()
            except RoundEngineError:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "job_retry",
                    job=job,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error=str(exc),
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(self._settings.retry_delay_ms / 1000 * (attempt + 1))

        raise last_error  # type: ignore[misc]
