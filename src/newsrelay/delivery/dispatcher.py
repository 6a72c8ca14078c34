from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from ..models import AggregationJob, DeliveryPreference, Summary
from ..storage import (
    append_job_error,
    get_schedule,
    list_preferences_for_schedule,
    record_delivery_attempt,
)
from ..utils import log_event
from .channels import PERMANENT, SENT, SendResult
from .digest import Digest, render_digest


@dataclass(frozen=True)
class DeliveryReport:
    preference_id: int
    channel: str
    address: str
    status: str
    attempts: int
    error: str | None = None


class Dispatcher:
    """Fans a finished job's summaries out to the delivery preferences that match it.

    Scheduled jobs go to preferences bound to their schedule; manual jobs go to
    preferences with no schedule. Failed deliveries are appended to the job's
    error text and never change the job's status.
    """

    def __init__(
        self,
        senders: dict[str, object],
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        app_name: str = "newsrelay",
        sleep: Callable[[float], None] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.senders = senders
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.app_name = app_name
        self._sleep = sleep
        self.logger = logger or logging.getLogger("newsrelay.delivery")

    def matching_preferences(self, conn, job: AggregationJob) -> list[DeliveryPreference]:
        return list_preferences_for_schedule(conn, job.schedule_id)

    def dispatch(self, conn, job: AggregationJob, summaries: list[Summary]) -> list[DeliveryReport]:
        if not summaries:
            log_event(self.logger, logging.INFO, "delivery_skipped", job_id=job.id, reason="no_summaries")
            return []
        preferences = self.matching_preferences(conn, job)
        if not preferences:
            return []
        schedule_name = None
        if job.schedule_id is not None:
            schedule = get_schedule(conn, job.schedule_id)
            schedule_name = schedule.name if schedule else str(job.schedule_id)
        digest = render_digest(
            job, summaries, app_name=self.app_name, schedule_name=schedule_name
        )
        return [self._deliver(conn, job, preference, digest) for preference in preferences]

    def _deliver(
        self, conn, job: AggregationJob, preference: DeliveryPreference, digest: Digest
    ) -> DeliveryReport:
        sender = self.senders.get(preference.channel)
        attempts = 0
        result = SendResult.permanent(f"no sender for channel {preference.channel}")
        while sender is not None:
            attempts += 1
            try:
                result = sender.send(preference.address, digest, preference.metadata)
            except Exception as exc:  # noqa: BLE001
                result = SendResult.retryable(str(exc))
            if result.status == SENT or result.status == PERMANENT:
                break
            if attempts >= self.max_attempts:
                break
            self._sleep(self.backoff_seconds * (2 ** (attempts - 1)))

        if result.status == SENT:
            record_delivery_attempt(
                conn,
                job_id=job.id,
                preference_id=preference.id,
                channel=preference.channel,
                address=preference.address,
                status="sent",
                attempts=attempts,
                error=None,
            )
            log_event(
                self.logger,
                logging.INFO,
                "delivery_sent",
                job_id=job.id,
                preference_id=preference.id,
                channel=preference.channel,
                attempts=attempts,
            )
            return DeliveryReport(preference.id, preference.channel, preference.address, "sent", attempts)

        error = f"delivery {preference.channel} to {preference.address}: {result.detail}"
        record_delivery_attempt(
            conn,
            job_id=job.id,
            preference_id=preference.id,
            channel=preference.channel,
            address=preference.address,
            status="failed",
            attempts=attempts,
            error=result.detail,
        )
        append_job_error(conn, job.id, error)
        log_event(
            self.logger,
            logging.WARNING,
            "delivery_failed",
            job_id=job.id,
            preference_id=preference.id,
            channel=preference.channel,
            attempts=attempts,
            error=result.detail,
        )
        return DeliveryReport(
            preference.id, preference.channel, preference.address, "failed", attempts, result.detail
        )
