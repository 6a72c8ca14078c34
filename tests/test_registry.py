from datetime import datetime, timezone

from newsrelay.registry import ScheduleRegistry
from newsrelay.storage import (
    compare_and_set_next_fire,
    get_schedule,
    insert_schedule,
    update_schedule,
)

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def _create(conn, *, cron="0 8 * * *", enabled=True, name="morning"):
    return insert_schedule(conn, name=name, cron=cron, timezone_name="UTC", enabled=enabled)


def test_refresh_computes_next_fire_after_now(conn, db_path):
    schedule = _create(conn)
    registry = ScheduleRegistry(db_path)

    missed = registry.refresh(NOW)

    assert missed == []
    entry = registry.get(schedule.id)
    assert entry.next_fire_at == "2024-01-02T08:00:00+00:00"
    assert entry.fire_at > NOW
    assert get_schedule(conn, schedule.id).next_fire_at == "2024-01-02T08:00:00+00:00"
    assert registry.earliest_fire_at() == datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)


def test_disabled_schedule_is_never_due(conn, db_path):
    schedule = _create(conn)
    registry = ScheduleRegistry(db_path)
    registry.refresh(NOW)

    update_schedule(conn, schedule.id, {"enabled": False})
    registry.refresh(NOW)

    later = datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert registry.due(later) == []
    assert registry.earliest_fire_at() is None
    assert get_schedule(conn, schedule.id).next_fire_at is None
    assert registry.advance(schedule.id, later) is False


def test_missed_fire_is_claimed_by_one_refresh(conn, db_path):
    schedule = _create(conn)
    compare_and_set_next_fire(conn, schedule.id, None, "2024-01-01T08:00:00+00:00")

    first = ScheduleRegistry(db_path)
    second = ScheduleRegistry(db_path)

    missed = first.refresh(NOW)
    assert [entry.schedule_id for entry in missed] == [schedule.id]
    assert second.refresh(NOW) == []
    assert second.get(schedule.id).next_fire_at == "2024-01-02T08:00:00+00:00"


def test_advance_wins_once_across_registries(conn, db_path):
    schedule = _create(conn)
    first = ScheduleRegistry(db_path)
    second = ScheduleRegistry(db_path)
    first.refresh(NOW)
    second.refresh(NOW)

    fire_time = datetime(2024, 1, 2, 8, 0, 30, tzinfo=timezone.utc)
    assert [entry.schedule_id for entry in first.due(fire_time)] == [schedule.id]

    assert first.advance(schedule.id, fire_time) is True
    assert first.advance(schedule.id, fire_time) is False
    assert second.advance(schedule.id, fire_time) is False

    assert first.get(schedule.id).next_fire_at == "2024-01-03T08:00:00+00:00"
    assert second.get(schedule.id).next_fire_at == "2024-01-03T08:00:00+00:00"
    assert first.due(fire_time) == []


def test_schedule_changes_mark_registry_stale(conn, db_path):
    schedule = _create(conn)
    registry = ScheduleRegistry(db_path)
    registry.refresh(NOW)
    assert registry.is_stale() is False

    update_schedule(conn, schedule.id, {"cron": "0 9 * * *"})
    assert registry.is_stale() is True

    registry.refresh(NOW)
    assert registry.is_stale() is False
    assert registry.get(schedule.id).next_fire_at == "2024-01-02T09:00:00+00:00"


def test_invalid_stored_cron_is_left_unscheduled(conn, db_path):
    broken = _create(conn, cron="not a cron", name="broken")
    healthy = _create(conn, name="healthy")
    registry = ScheduleRegistry(db_path)

    registry.refresh(NOW)

    assert registry.get(broken.id).next_fire_at is None
    assert registry.get(healthy.id).next_fire_at is not None
