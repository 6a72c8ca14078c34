from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from .jobs import JobRequest
from .registry import ScheduleEntry, ScheduleRegistry
from .utils import log_event, utc_now

_MIN_SLEEP_SECONDS = 0.01


class Scheduler:
    """Single timer thread that turns due schedules into jobs.

    The thread sleeps until the earliest known fire time, capped by the poll
    interval, and wakes early when ``refresh`` or ``shutdown`` is called.
    """

    def __init__(
        self,
        registry: ScheduleRegistry,
        queue,
        *,
        poll_interval_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.queue = queue
        self._poll_interval = max(0.01, float(poll_interval_seconds))
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._started = False
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.logger = logging.getLogger("newsrelay.scheduler")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def initialize(self, start_thread: bool = True) -> list[int]:
        with self._lock:
            if self._started:
                return []
            self._started = True
            job_ids = self._fire_missed(catch_up=True)
            if start_thread:
                self._stop.clear()
                self._thread = threading.Thread(
                    target=self._run, name="newsrelay-scheduler", daemon=True
                )
                self._thread.start()
        return job_ids

    def refresh(self) -> list[int]:
        job_ids = self._fire_missed(catch_up=False)
        self._wake.set()
        return job_ids

    def tick(self, now: datetime | None = None) -> list[int]:
        now = now or self._clock()
        job_ids: list[int] = []
        for entry in self.registry.due(now):
            if not self.registry.advance(entry.schedule_id, now):
                continue
            job_ids.append(self._fire(entry, "schedule_fired"))
        return job_ids

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    def _fire_missed(self, *, catch_up: bool) -> list[int]:
        missed = self.registry.refresh(self._clock())
        event = "schedule_catch_up" if catch_up else "schedule_fired"
        return [self._fire(entry, event) for entry in missed]

    def _fire(self, entry: ScheduleEntry, event: str) -> int:
        job_id = self.queue.enqueue(JobRequest(triggered_by=str(entry.schedule_id)))
        log_event(
            self.logger,
            logging.INFO,
            event,
            schedule_id=entry.schedule_id,
            schedule_name=entry.name,
            job_id=job_id,
            next_fire_at=entry.next_fire_at,
        )
        return job_id

    def _run(self) -> None:
        log_event(self.logger, logging.INFO, "scheduler_started", poll=self._poll_interval)
        while not self._stop.is_set():
            self._wake.wait(self._sleep_seconds())
            self._wake.clear()
            if self._stop.is_set():
                break
            try:
                if self.registry.is_stale():
                    self._fire_missed(catch_up=False)
                self.tick()
            except Exception as exc:  # noqa: BLE001
                log_event(self.logger, logging.ERROR, "scheduler_error", error=str(exc))
        log_event(self.logger, logging.INFO, "scheduler_stopped")

    def _sleep_seconds(self) -> float:
        earliest = self.registry.earliest_fire_at()
        if earliest is None:
            return self._poll_interval
        remaining = (earliest - self._clock()).total_seconds()
        return max(_MIN_SLEEP_SECONDS, min(self._poll_interval, remaining))
