from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from .cron import CronError, next_fire_time
from .db import connect_db
from .models import Schedule
from .storage import (
    compare_and_set_next_fire,
    get_schedule,
    get_schedules_version,
    list_schedules,
)
from .utils import isoformat_utc, log_event, parse_iso, utc_now


@dataclass(frozen=True)
class ScheduleEntry:
    schedule_id: int
    name: str
    cron: str
    timezone: str
    enabled: bool
    next_fire_at: str | None
    fire_at: datetime | None


class ScheduleRegistry:
    """In-memory view of the schedules table.

    The snapshot is an immutable tuple replaced wholesale under a writer lock;
    readers take a reference to the current tuple and never lock. Fire times
    are persisted so a missed fire survives a restart, and every write of a
    fire time is a compare-and-set on the previously stored value.
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] | None = None) -> None:
        self._db_path = db_path
        self._clock = clock or utc_now
        self._write_lock = threading.Lock()
        self._snapshot: tuple[ScheduleEntry, ...] = ()
        self._version: int | None = None
        self.logger = logging.getLogger("newsrelay.registry")

    def refresh(self, now: datetime | None = None) -> list[ScheduleEntry]:
        now = now or self._clock()
        missed: list[ScheduleEntry] = []
        entries: list[ScheduleEntry] = []
        with self._write_lock:
            conn = connect_db(self._db_path)
            try:
                version = get_schedules_version(conn)
                for schedule in list_schedules(conn):
                    entry, was_missed = self._reconcile(conn, schedule, now)
                    entries.append(entry)
                    if was_missed:
                        missed.append(entry)
            finally:
                conn.close()
            self._snapshot = tuple(entries)
            self._version = version
        log_event(
            self.logger,
            logging.INFO,
            "registry_refreshed",
            schedules=len(entries),
            enabled=sum(1 for entry in entries if entry.enabled),
            missed=len(missed),
            version=version,
        )
        return missed

    def _reconcile(self, conn, schedule: Schedule, now: datetime) -> tuple[ScheduleEntry, bool]:
        if not schedule.enabled:
            if schedule.next_fire_at is not None:
                compare_and_set_next_fire(conn, schedule.id, schedule.next_fire_at, None)
            return _entry(schedule, None), False

        stored = parse_iso(schedule.next_fire_at)
        if stored is not None and stored > now:
            return _entry(schedule, schedule.next_fire_at), False

        try:
            upcoming = isoformat_utc(next_fire_time(schedule.cron, schedule.timezone, now))
        except CronError as exc:
            log_event(
                self.logger,
                logging.ERROR,
                "schedule_invalid",
                schedule_id=schedule.id,
                cron=schedule.cron,
                timezone=schedule.timezone,
                error=str(exc),
            )
            return _entry(schedule, None), False

        if compare_and_set_next_fire(conn, schedule.id, schedule.next_fire_at, upcoming):
            return _entry(schedule, upcoming), stored is not None

        # Another process moved this schedule on first; adopt its value.
        current = get_schedule(conn, schedule.id)
        if current is None:
            return _entry(schedule, None), False
        return _entry(current, current.next_fire_at), False

    def advance(self, schedule_id: int, now: datetime | None = None) -> bool:
        """Claim the due fire of one schedule and move it to the next fire after ``now``.

        Returns False when the entry is not due or someone else claimed it.
        """
        now = now or self._clock()
        with self._write_lock:
            entry = self.get(schedule_id)
            if entry is None or not entry.enabled or entry.fire_at is None:
                return False
            if entry.fire_at > now:
                return False
            upcoming = isoformat_utc(next_fire_time(entry.cron, entry.timezone, now))
            conn = connect_db(self._db_path)
            try:
                won = compare_and_set_next_fire(conn, schedule_id, entry.next_fire_at, upcoming)
                if won:
                    updated = replace(entry, next_fire_at=upcoming, fire_at=parse_iso(upcoming))
                else:
                    current = get_schedule(conn, schedule_id)
                    updated = (
                        _entry(current, current.next_fire_at if current.enabled else None)
                        if current
                        else None
                    )
            finally:
                conn.close()
            self._swap_entry(schedule_id, updated)
        return won

    def _swap_entry(self, schedule_id: int, updated: ScheduleEntry | None) -> None:
        entries = [entry for entry in self._snapshot if entry.schedule_id != schedule_id]
        if updated is not None:
            entries.append(updated)
        entries.sort(key=lambda entry: entry.schedule_id)
        self._snapshot = tuple(entries)

    def entries(self) -> tuple[ScheduleEntry, ...]:
        return self._snapshot

    def get(self, schedule_id: int) -> ScheduleEntry | None:
        for entry in self._snapshot:
            if entry.schedule_id == schedule_id:
                return entry
        return None

    def due(self, now: datetime | None = None) -> list[ScheduleEntry]:
        now = now or self._clock()
        return [
            entry
            for entry in self._snapshot
            if entry.enabled and entry.fire_at is not None and entry.fire_at <= now
        ]

    def earliest_fire_at(self) -> datetime | None:
        fire_times = [
            entry.fire_at for entry in self._snapshot if entry.enabled and entry.fire_at is not None
        ]
        return min(fire_times) if fire_times else None

    def is_stale(self) -> bool:
        """True when schedules were changed (by any process) since the last refresh."""
        conn = connect_db(self._db_path)
        try:
            return get_schedules_version(conn) != self._version
        finally:
            conn.close()


def _entry(schedule: Schedule, next_fire_at: str | None) -> ScheduleEntry:
    return ScheduleEntry(
        schedule_id=schedule.id,
        name=schedule.name,
        cron=schedule.cron,
        timezone=schedule.timezone,
        enabled=schedule.enabled,
        next_fire_at=next_fire_at,
        fire_at=parse_iso(next_fire_at),
    )
