from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from .db import DBConn, connect_db
from .models import TRIGGER_MANUAL, AggregationJob, AggregationOutcome, normalize_trigger
from .storage import (
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    recover_orphaned_jobs,
    renew_job_lease,
)
from .utils import log_event

ORPHAN_REASON = "orphaned_by_restart"

JobHandler = Callable[[DBConn, AggregationJob], AggregationOutcome]
FinishHook = Callable[[DBConn, AggregationJob, AggregationOutcome], None]


@dataclass(frozen=True)
class JobRequest:
    source_ids: list[int] | None = None
    force: bool = False
    triggered_by: str = TRIGGER_MANUAL

    def __post_init__(self) -> None:
        object.__setattr__(self, "triggered_by", normalize_trigger(self.triggered_by))

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> "JobRequest":
        payload = payload or {}
        source_ids = payload.get("source_ids")
        return cls(
            source_ids=[int(item) for item in source_ids] if source_ids is not None else None,
            force=bool(payload.get("force", False)),
            triggered_by=payload.get("triggered_by"),
        )


class JobQueue:
    """FIFO queue of aggregation jobs with single-flight execution.

    Jobs live in the ``jobs`` table; ``enqueue`` only inserts a pending row.
    Workers claim the oldest pending job, and a claim succeeds only while no
    other job is running, so at most one aggregation runs at a time across
    every worker that shares the database.
    """

    def __init__(
        self,
        db_path: str,
        handler: JobHandler,
        *,
        workers: int = 1,
        poll_seconds: float = 5.0,
        on_finished: FinishHook | None = None,
        worker_prefix: str | None = None,
        lock_timeout_seconds: int = 120,
    ) -> None:
        self._db_path = db_path
        self._handler = handler
        self._on_finished = on_finished
        self._workers = max(0, int(workers))
        self._poll_seconds = poll_seconds
        self._lock_timeout_seconds = max(1, int(lock_timeout_seconds))
        self._claim_lock = threading.Lock()
        self._wakeup = threading.Condition()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._worker_prefix = worker_prefix or f"worker-{uuid.uuid4().hex[:8]}"
        self.logger = logging.getLogger("newsrelay.jobs")

    def enqueue(self, request: JobRequest | dict[str, Any] | None = None) -> int:
        if not isinstance(request, JobRequest):
            request = JobRequest.from_payload(request)
        conn = connect_db(self._db_path)
        try:
            job_id = enqueue_job(
                conn,
                source_ids=request.source_ids,
                force=request.force,
                triggered_by=request.triggered_by,
            )
        finally:
            conn.close()
        log_event(
            self.logger,
            logging.INFO,
            "job_enqueued",
            job_id=job_id,
            triggered_by=request.triggered_by,
            force=request.force,
            source_ids=request.source_ids,
        )
        self._notify()
        return job_id

    def recover(self) -> list[int]:
        """Fail running jobs whose owner stopped renewing its lease."""
        conn = connect_db(self._db_path)
        try:
            with self._claim_lock:
                return self._recover(conn)
        finally:
            conn.close()

    def _recover(self, conn: DBConn) -> list[int]:
        recovered = recover_orphaned_jobs(conn, ORPHAN_REASON, self._lock_timeout_seconds)
        if recovered:
            log_event(
                self.logger,
                logging.WARNING,
                "orphaned_jobs_recovered",
                count=len(recovered),
                job_ids=recovered,
            )
        return recovered

    def start(self) -> list[int]:
        recovered = self.recover()
        self._stop.clear()
        for index in range(self._workers):
            worker_id = f"{self._worker_prefix}-{index}"
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id,),
                name=f"newsrelay-{worker_id}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        return recovered

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        self._notify()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def run_once(self, worker_id: str | None = None) -> AggregationJob | None:
        """Claim and execute at most one job; returns the finished job, if any."""
        worker_id = worker_id or f"{self._worker_prefix}-once"
        conn = connect_db(self._db_path)
        try:
            with self._claim_lock:
                self._recover(conn)
                job = claim_next_job(conn, worker_id)
            if job is None:
                return None
            log_event(
                self.logger,
                logging.INFO,
                "job_claimed",
                job_id=job.id,
                worker_id=worker_id,
                triggered_by=job.triggered_by,
            )
            renewing = threading.Event()
            renewer = threading.Thread(
                target=self._renew_lease,
                args=(job.id, worker_id, renewing),
                name=f"newsrelay-lease-{job.id}",
                daemon=True,
            )
            renewer.start()
            try:
                self._execute(conn, job)
            finally:
                renewing.set()
                renewer.join()
            return get_job(conn, job.id)
        finally:
            conn.close()
            # The single-flight slot is free again; let idle workers look.
            self._notify()

    def _execute(self, conn: DBConn, job: AggregationJob) -> None:
        try:
            outcome = self._handler(conn, job)
        except Exception as exc:  # noqa: BLE001
            fail_job(conn, job.id, str(exc))
            log_event(self.logger, logging.ERROR, "job_failed", job_id=job.id, error=str(exc))
            return

        if outcome.status == "failed":
            finished = fail_job(conn, job.id, outcome.error or "failed", outcome.result)
            event, level = "job_failed", logging.ERROR
        else:
            finished = complete_job(conn, job.id, error=outcome.error, result=outcome.result)
            event, level = "job_succeeded", logging.INFO
        if not finished:
            log_event(self.logger, logging.ERROR, "job_complete_failed", job_id=job.id)
            return
        log_event(
            self.logger,
            level,
            event,
            job_id=job.id,
            summaries=len(outcome.summaries),
            error=outcome.error,
        )
        if self._on_finished is not None:
            finished_job = get_job(conn, job.id)
            try:
                self._on_finished(conn, finished_job, outcome)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "job_finish_hook_error",
                    job_id=job.id,
                    error=str(exc),
                )

    def _renew_lease(self, job_id: int, worker_id: str, stop: threading.Event) -> None:
        interval = max(0.5, self._lock_timeout_seconds / 4)
        conn = connect_db(self._db_path)
        try:
            while not stop.wait(interval):
                try:
                    renew_job_lease(conn, job_id, worker_id)
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        self.logger,
                        logging.WARNING,
                        "job_lease_renew_failed",
                        job_id=job_id,
                        error=str(exc),
                    )
        finally:
            conn.close()

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.run_once(worker_id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "worker_error",
                    worker_id=worker_id,
                    error=str(exc),
                )
                job = None
            if job is not None:
                continue
            with self._wakeup:
                if self._stop.is_set():
                    break
                self._wakeup.wait(self._poll_seconds)

    def _notify(self) -> None:
        with self._wakeup:
            self._wakeup.notify_all()
