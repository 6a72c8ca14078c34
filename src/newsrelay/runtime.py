from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable

from .config import Config, load_runtime_config
from .db import DBConn, connect_db, get_state_db_path
from .delivery import Dispatcher, build_senders
from .jobs import JobQueue, JobRequest
from .models import AggregationJob, AggregationOutcome
from .pipelines.aggregate import run_aggregation
from .pipelines.fetch import Fetcher
from .pipelines.summarize import build_summarizer
from .registry import ScheduleRegistry
from .scheduler import Scheduler
from .services.channels_service import load_channel_secret
from .utils import log_event


class Runtime:
    """Owns the registry, scheduler and job queue of one process.

    ``initialize()`` recovers orphaned jobs, starts the worker threads and
    then the scheduler (which enqueues catch-up jobs for missed schedules).
    ``shutdown()`` stops the scheduler first, then the workers; a runtime that
    has been shut down is not restarted. Both are safe to call more than once.

    ``fetcher``, ``summarizer`` and ``senders`` default to the production
    implementations built from the runtime config; tests pass fakes.
    """

    def __init__(
        self,
        db_path: str | None = None,
        *,
        config: Config | None = None,
        fetcher=None,
        summarizer=None,
        senders: dict[str, Any] | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        start_threads: bool = True,
        worker_id: str | None = None,
    ) -> None:
        self.db_path = db_path or get_state_db_path()
        self._config_override = config
        self.config = config or self._load_config()
        self._fetcher = fetcher
        self._summarizer = summarizer
        self._senders = senders
        self._sleep = sleep
        self._start_threads = start_threads
        self._lock = threading.Lock()
        self._initialized = False
        self._stopped = False
        self.logger = logging.getLogger("newsrelay.runtime")

        self.registry = ScheduleRegistry(self.db_path, clock=clock)
        self.queue = JobQueue(
            self.db_path,
            self.run_job,
            workers=self.config.jobs.workers,
            poll_seconds=self.config.jobs.poll_seconds,
            on_finished=self.deliver,
            worker_prefix=worker_id,
            lock_timeout_seconds=self.config.jobs.lock_timeout_seconds,
        )
        self.scheduler = Scheduler(
            self.registry,
            self.queue,
            poll_interval_seconds=self.config.scheduler.poll_interval_seconds,
            clock=clock,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        with self._lock:
            if self._initialized or self._stopped:
                return
            self._initialized = True
            if self._start_threads and self.config.jobs.workers > 0:
                self.queue.start()
            else:
                self.queue.recover()
            if self.config.scheduler.enabled:
                self.scheduler.initialize(start_thread=self._start_threads)
            log_event(
                self.logger,
                logging.INFO,
                "runtime_initialized",
                workers=self.config.jobs.workers if self._start_threads else 0,
                scheduler=self.config.scheduler.enabled,
            )

    def shutdown(self) -> None:
        with self._lock:
            if not self._initialized or self._stopped:
                return
            self._stopped = True
            self.scheduler.shutdown()
            self.queue.stop(timeout=5.0)
            log_event(self.logger, logging.INFO, "runtime_stopped")

    def enqueue(self, request: JobRequest | dict[str, Any] | None = None) -> int:
        return self.queue.enqueue(request)

    def refresh_schedules(self) -> list[int]:
        """Re-read schedules after a mutation; only the process running the scheduler fires."""
        if not self._initialized or self._stopped or not self.config.scheduler.enabled:
            return []
        return self.scheduler.refresh()

    def run_job(self, conn: DBConn, job: AggregationJob) -> AggregationOutcome:
        config = self._config_override or load_runtime_config(conn)
        fetcher = self._fetcher or Fetcher(
            config.http, max_items=config.pipeline.max_items_per_source
        )
        summarizer = self._summarizer or build_summarizer(config)
        return run_aggregation(
            conn,
            job,
            config=config,
            fetcher=fetcher,
            summarizer=summarizer,
        )

    def deliver(self, conn: DBConn, job: AggregationJob, outcome: AggregationOutcome) -> None:
        config = self._config_override or load_runtime_config(conn)
        self.build_dispatcher(config).dispatch(conn, job, outcome.summaries)

    def build_dispatcher(self, config: Config) -> Dispatcher:
        senders = self._senders
        if senders is None:
            senders = build_senders(config.delivery, self._load_secret, config.http.timeout_seconds)
        return Dispatcher(
            senders,
            max_attempts=config.delivery.max_attempts,
            backoff_seconds=config.delivery.backoff_seconds,
            app_name=config.app.name,
            sleep=self._sleep,
        )

    def _load_config(self) -> Config:
        conn = connect_db(self.db_path)
        try:
            return load_runtime_config(conn)
        finally:
            conn.close()

    def _load_secret(self, channel: str) -> str | None:
        conn = connect_db(self.db_path)
        try:
            return load_channel_secret(conn, channel)
        finally:
            conn.close()
