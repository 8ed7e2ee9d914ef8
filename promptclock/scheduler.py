"""Daily timers for stored prompts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from promptclock.db import Database
from promptclock.errors import NotFoundError
from promptclock.models import Job

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


def next_fire_time(
    hour: int, minute: int, zone: ZoneInfo, now: datetime, fired_on: date | None = None
) -> datetime:
    """Return the first hour:minute in ``zone`` strictly after ``now``.

    ``fired_on`` is the local date of the previous fire. The search then starts
    on the following local day, so a wall time repeated when clocks go back
    fires only once.
    """
    start = now.astimezone(zone)
    if fired_on is not None and start.date() <= fired_on:
        start = datetime.combine(fired_on + timedelta(days=1), time.min, tzinfo=zone) - timedelta(seconds=1)
    return croniter(f"{minute} {hour} * * *", start).get_next(datetime)


def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise NotFoundError(f"Unknown timezone: {name}") from exc


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _Timer:
    job: Job
    zone: ZoneInfo
    task: asyncio.Task[None]

    def stop(self) -> None:
        self.task.cancel()


class ScheduleRegistry:
    """Owns exactly one live timer per stored job id.

    Each timer sleeps until the job's next tenant-local fire time and then
    hands the job to ``handler`` in a separate task, so cancelling a timer
    never interrupts a run that is already in flight. The tenant timezone is
    read when the job is registered; later timezone edits only apply once the
    job is registered again.
    """

    def __init__(
        self,
        db: Database,
        handler: Callable[[Job], Awaitable[None]],
        clock: Clock = _utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._db = db
        self._handler = handler
        self._clock = clock
        self._sleep = sleep
        self._timers: dict[int, _Timer] = {}
        self._inflight: set[asyncio.Task[None]] = set()

    def load_all(self) -> int:
        """Register a timer for every stored job. Returns the number registered."""

        registered = 0
        for job in self._db.list_jobs():
            try:
                self.register_or_replace(job)
            except NotFoundError as exc:
                LOGGER.warning("Skipping job %s: %s", job.id, exc)
                continue
            registered += 1
        LOGGER.info("Loaded %d scheduled job(s)", registered)
        return registered

    def register_or_replace(self, job: Job) -> datetime:
        """Start the job's timer, stopping any timer already held for its id.

        Returns the next fire time. If the tenant or its timezone cannot be
        resolved the existing timer keeps running.
        """
        zone = self.tenant_zone(job.tenant_id)

        existing = self._timers.get(job.id)
        if existing is not None:
            existing.stop()
            del self._timers[job.id]

        task = asyncio.create_task(self._run_timer(job, zone), name=f"prompt-job-{job.id}")
        self._timers[job.id] = _Timer(job=job, zone=zone, task=task)
        next_at = next_fire_time(job.hour, job.minute, zone, self._clock())
        LOGGER.info(
            "Scheduled job %s for tenant %s at %02d:%02d %s (next %s)",
            job.id,
            job.tenant_id,
            job.hour,
            job.minute,
            zone.key,
            next_at.isoformat(),
        )
        return next_at

    def tenant_zone(self, tenant_id: str) -> ZoneInfo:
        """Resolve the zone new timers for ``tenant_id`` would use."""

        tenant = self._db.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")
        return resolve_zone(tenant.timezone)

    def cancel(self, job_id: int) -> bool:
        """Stop and forget the job's timer. Unknown ids are ignored."""

        timer = self._timers.get(job_id)
        if timer is None:
            return False
        timer.stop()
        del self._timers[job_id]
        LOGGER.info("Cancelled timer for job %s", job_id)
        return True

    def job_ids(self) -> list[int]:
        return sorted(self._timers)

    def next_fire(self, job_id: int) -> datetime | None:
        timer = self._timers.get(job_id)
        if timer is None:
            return None
        return next_fire_time(timer.job.hour, timer.job.minute, timer.zone, self._clock())

    async def drain(self) -> None:
        """Wait for fires that are currently running."""

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def stop(self) -> None:
        """Cancel every timer and in-flight fire."""

        for timer in self._timers.values():
            timer.stop()
        self._timers.clear()
        for task in list(self._inflight):
            task.cancel()

    async def _run_timer(self, job: Job, zone: ZoneInfo) -> None:
        fired_on: date | None = None
        while True:
            fire_at = next_fire_time(job.hour, job.minute, zone, self._clock(), fired_on)
            while (remaining := (fire_at - self._clock()).total_seconds()) > 0:
                await self._sleep(remaining)
            fired_on = fire_at.astimezone(zone).date()
            task = asyncio.create_task(self._fire(job.id), name=f"prompt-fire-{job.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _fire(self, job_id: int) -> None:
        job = self._db.get_job(job_id)
        if job is None:
            LOGGER.warning("Job %s no longer exists, dropping its timer", job_id)
            self.cancel(job_id)
            return

        LOGGER.info("Firing job %s for tenant %s", job.id, job.tenant_id)
        try:
            await self._handler(job)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scheduled job %s failed", job.id)
