import asyncio
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from fakes import FakeClock, settle
from promptclock.errors import NotFoundError
from promptclock.orchestrator import Orchestrator
from promptclock.run_processor import RunEventProcessor
from promptclock.scheduler import ScheduleRegistry, next_fire_time
from promptclock.sessions import SessionManager
from promptclock.tools.registry import FunctionRegistry

BERLIN = ZoneInfo("Europe/Berlin")


def _utc(hour: int, minute: int, day: int = 19) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


class Recorder:
    def __init__(self) -> None:
        self.fired = []

    async def __call__(self, job) -> None:
        self.fired.append((job.id, job.tenant_id, job.prompt))


def test_next_fire_time_uses_tenant_local_time():
    # 2026-10-19 is still summer time in Berlin (UTC+2).
    assert next_fire_time(8, 30, BERLIN, _utc(6, 0)) == _utc(6, 30)
    assert next_fire_time(8, 30, BERLIN, _utc(6, 30)) == _utc(6, 30, day=20)
    assert next_fire_time(8, 30, ZoneInfo("America/New_York"), _utc(6, 0)) == _utc(12, 30)


def test_next_fire_time_after_dst_change():
    # Berlin switches back to UTC+1 on 2026-10-25.
    assert next_fire_time(8, 30, BERLIN, _utc(12, 0, day=24)) == _utc(7, 30, day=25)


def test_repeated_wall_time_fires_once_per_local_day():
    # 02:30 happens twice in Berlin on 2026-10-25 (00:30Z and 01:30Z).
    fires = []
    now, fired_on = _utc(12, 0, day=24), None
    for _ in range(4):
        now = next_fire_time(2, 30, BERLIN, now, fired_on)
        fired_on = now.astimezone(BERLIN).date()
        fires.append(now)

    assert fires == [_utc(0, 30, day=25), _utc(1, 30, day=26), _utc(1, 30, day=27), _utc(1, 30, day=28)]
    assert len({fire.astimezone(BERLIN).date() for fire in fires}) == len(fires)


@pytest.mark.asyncio
async def test_timer_skips_second_occurrence_when_clocks_go_back(db):
    db.ensure_tenant("t1", "s", "Europe/Berlin")
    clock = FakeClock(_utc(12, 0, day=24))
    handler = Recorder()
    schedules = ScheduleRegistry(db, handler, clock=clock, sleep=clock.sleep)
    job = db.create_job("t1", 2, 30, "Night shift")
    schedules.register_or_replace(job)

    await clock.advance_to(_utc(0, 30, day=25))
    await schedules.drain()
    await clock.advance_to(_utc(1, 30, day=25))
    await schedules.drain()
    assert len(handler.fired) == 1

    await clock.advance_to(_utc(1, 30, day=26))
    await schedules.drain()
    assert len(handler.fired) == 2
    schedules.stop()


@pytest.mark.asyncio
async def test_registering_twice_keeps_one_timer_at_latest_time(db):
    db.ensure_tenant("t1", "s", "Europe/Berlin")
    clock = FakeClock(_utc(6, 0))
    handler = Recorder()
    schedules = ScheduleRegistry(db, handler, clock=clock, sleep=clock.sleep)
    job = db.create_job("t1", 8, 30, "Good morning")

    schedules.register_or_replace(job)
    moved = db.update_job("t1", job.id, hour=9, minute=0)
    schedules.register_or_replace(moved)

    assert schedules.job_ids() == [job.id]
    assert schedules.next_fire(job.id) == _utc(7, 0)

    await clock.advance_to(_utc(6, 30))
    assert handler.fired == []

    await clock.advance_to(_utc(7, 0))
    await schedules.drain()
    assert handler.fired == [(job.id, "t1", "Good morning")]
    schedules.stop()


@pytest.mark.asyncio
async def test_cancel_unknown_job_is_noop_and_keeps_other_timers(db):
    db.ensure_tenant("t1", "s", "UTC")
    schedules = ScheduleRegistry(db, Recorder())
    job = db.create_job("t1", 8, 30, "Good morning")
    schedules.register_or_replace(job)

    assert schedules.cancel(9999) is False
    assert schedules.job_ids() == [job.id]

    assert schedules.cancel(job.id) is True
    assert schedules.job_ids() == []
    schedules.stop()


@pytest.mark.asyncio
async def test_register_requires_known_tenant_and_timezone(db):
    schedules = ScheduleRegistry(db, Recorder())
    db.ensure_tenant("t1", "s", "Mars/Olympus_Mons")
    job = db.create_job("t1", 8, 30, "Good morning")

    with pytest.raises(NotFoundError):
        schedules.register_or_replace(job)

    db.ensure_tenant("t2", "s", "UTC")
    orphan = db.create_job("t2", 8, 30, "x")
    orphan.tenant_id = "ghost"
    with pytest.raises(NotFoundError):
        schedules.register_or_replace(orphan)
    assert schedules.job_ids() == []


@pytest.mark.asyncio
async def test_failed_reregistration_keeps_existing_timer(db):
    db.ensure_tenant("t1", "s", "UTC")
    schedules = ScheduleRegistry(db, Recorder())
    job = db.create_job("t1", 8, 30, "Good morning")
    schedules.register_or_replace(job)
    db.update_tenant("t1", timezone_name="Not/AZone")

    with pytest.raises(NotFoundError):
        schedules.register_or_replace(job)

    assert schedules.job_ids() == [job.id]
    schedules.stop()


@pytest.mark.asyncio
async def test_load_all_registers_stored_jobs_and_skips_broken_ones(db):
    db.ensure_tenant("t1", "s", "Europe/Berlin")
    db.ensure_tenant("t2", "s", "Nowhere/Special")
    good = db.create_job("t1", 8, 30, "Good morning")
    db.create_job("t2", 9, 0, "Skipped")
    schedules = ScheduleRegistry(db, Recorder())

    assert schedules.load_all() == 1
    assert schedules.job_ids() == [good.id]
    schedules.stop()


@pytest.mark.asyncio
async def test_fire_for_job_missing_from_store_drops_timer(db):
    db.ensure_tenant("t1", "s", "UTC")
    clock = FakeClock(_utc(8, 0))
    handler = Recorder()
    schedules = ScheduleRegistry(db, handler, clock=clock, sleep=clock.sleep)
    job = db.create_job("t1", 8, 30, "Good morning")
    schedules.register_or_replace(job)
    db.delete_job("t1", job.id)

    await clock.advance_to(_utc(8, 30))
    await schedules.drain()

    assert handler.fired == []
    assert schedules.job_ids() == []


@pytest.mark.asyncio
async def test_handler_failure_keeps_timer_alive(db, caplog):
    db.ensure_tenant("t1", "s", "UTC")
    clock = FakeClock(_utc(8, 0))

    async def boom(job):
        raise RuntimeError("model down")

    schedules = ScheduleRegistry(db, boom, clock=clock, sleep=clock.sleep)
    job = db.create_job("t1", 8, 30, "Good morning")
    schedules.register_or_replace(job)

    await clock.advance_to(_utc(8, 30))
    await schedules.drain()

    assert schedules.job_ids() == [job.id]
    assert "Scheduled job" in caplog.text
    schedules.stop()


@pytest.mark.asyncio
async def test_cancel_does_not_interrupt_inflight_fire(db):
    db.ensure_tenant("t1", "s", "UTC")
    clock = FakeClock(_utc(8, 0))
    release = asyncio.Event()
    finished = []

    async def slow(job):
        await release.wait()
        finished.append(job.id)

    schedules = ScheduleRegistry(db, slow, clock=clock, sleep=clock.sleep)
    job = db.create_job("t1", 8, 30, "Good morning")
    schedules.register_or_replace(job)
    await clock.advance_to(_utc(8, 30))

    db.delete_job("t1", job.id)
    schedules.cancel(job.id)
    release.set()
    await schedules.drain()

    assert finished == [job.id]
    assert schedules.job_ids() == []


@pytest.mark.asyncio
async def test_berlin_job_fires_once_and_delivers_only_to_its_tenant(db, backend, transport):
    db.ensure_tenant("berlin", "You are a morning assistant", "Europe/Berlin")
    db.ensure_tenant("tokyo", "s", "Asia/Tokyo")
    registry = FunctionRegistry(db)
    sessions = SessionManager(db, backend, registry)
    orchestrator = Orchestrator(
        db=db,
        backend=backend,
        sessions=sessions,
        processor=RunEventProcessor(backend, registry),
        transport=transport,
        default_system_instructions="s",
        default_timezone="UTC",
    )
    clock = FakeClock(_utc(6, 0))
    schedules = ScheduleRegistry(db, orchestrator.handle_schedule_trigger, clock=clock, sleep=clock.sleep)
    berlin_job = db.create_job("berlin", 8, 30, "Good morning")
    db.create_job("tokyo", 8, 30, "Ohayo")
    schedules.load_all()

    await clock.advance_to(_utc(6, 29))
    assert transport.sent == []

    await clock.advance_to(_utc(6, 30))
    await settle()
    await schedules.drain()

    assert transport.sent == [("berlin", "echo: Good morning")]
    assert len(backend.runs) == 1
    thread_id, _ = backend.runs[0]
    assert backend.threads[thread_id] == {"tenant": "berlin"}
    assert backend.messages[thread_id] == [("user", "Good morning")]
    assert schedules.next_fire(berlin_job.id) == _utc(6, 30, day=20)
    schedules.stop()
