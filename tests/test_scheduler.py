import time
from datetime import datetime, timedelta, timezone

from newsrelay.jobs import JobQueue
from newsrelay.registry import ScheduleRegistry
from newsrelay.scheduler import Scheduler
from newsrelay.storage import compare_and_set_next_fire, insert_schedule, list_jobs
from newsrelay.utils import isoformat_utc, utc_now

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _unused_handler(conn, job):
    raise AssertionError("jobs are not executed in scheduler tests")


def _scheduler(db_path, clock=lambda: NOW, poll=30.0):
    queue = JobQueue(db_path, _unused_handler, workers=0)
    return Scheduler(ScheduleRegistry(db_path, clock=clock), queue, poll_interval_seconds=poll, clock=clock)


def test_initialize_enqueues_missed_schedule_once(conn, db_path):
    schedule = insert_schedule(conn, name="morning", cron="0 8 * * *", timezone_name="UTC", enabled=True)
    compare_and_set_next_fire(conn, schedule.id, None, "2024-01-01T08:00:00+00:00")

    scheduler = _scheduler(db_path)
    first = scheduler.initialize(start_thread=False)
    again = scheduler.initialize(start_thread=False)
    other_process = _scheduler(db_path).initialize(start_thread=False)

    assert len(first) == 1
    assert again == []
    assert other_process == []
    jobs = list_jobs(conn)
    assert len(jobs) == 1
    assert jobs[0].triggered_by == str(schedule.id)
    assert jobs[0].schedule_id == schedule.id
    assert jobs[0].status == "pending"


def test_new_schedule_does_not_fire_on_initialize(conn, db_path):
    insert_schedule(conn, name="morning", cron="0 8 * * *", timezone_name="UTC", enabled=True)
    scheduler = _scheduler(db_path)

    assert scheduler.initialize(start_thread=False) == []
    assert list_jobs(conn) == []


def test_tick_fires_due_schedule_and_advances(conn, db_path):
    schedule = insert_schedule(conn, name="morning", cron="0 8 * * *", timezone_name="UTC", enabled=True)
    scheduler = _scheduler(db_path)
    scheduler.initialize(start_thread=False)

    fire_time = datetime(2024, 1, 2, 8, 0, 5, tzinfo=timezone.utc)
    assert scheduler.tick(NOW) == []
    fired = scheduler.tick(fire_time)
    assert len(fired) == 1
    assert scheduler.tick(fire_time) == []

    entry = scheduler.registry.get(schedule.id)
    assert entry.next_fire_at == "2024-01-03T08:00:00+00:00"
    assert [job.triggered_by for job in list_jobs(conn)] == [str(schedule.id)]


def test_refresh_picks_up_new_schedules(conn, db_path):
    scheduler = _scheduler(db_path)
    scheduler.initialize(start_thread=False)
    assert scheduler.registry.entries() == ()

    schedule = insert_schedule(conn, name="evening", cron="0 18 * * *", timezone_name="UTC", enabled=True)
    assert scheduler.refresh() == []

    entry = scheduler.registry.get(schedule.id)
    assert entry is not None
    assert entry.next_fire_at == "2024-01-01T18:00:00+00:00"


def test_timer_thread_fires_when_schedule_comes_due(conn, db_path):
    schedule = insert_schedule(conn, name="soon", cron="0 8 * * *", timezone_name="UTC", enabled=True)
    soon = isoformat_utc(utc_now() + timedelta(milliseconds=300))
    compare_and_set_next_fire(conn, schedule.id, None, soon)

    scheduler = _scheduler(db_path, clock=utc_now, poll=5.0)
    assert scheduler.initialize(start_thread=True) == []
    assert scheduler.running
    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline and not list_jobs(conn):
            time.sleep(0.05)
    finally:
        scheduler.shutdown()

    assert not scheduler.running
    jobs = list_jobs(conn)
    assert len(jobs) == 1
    assert jobs[0].triggered_by == str(schedule.id)
