from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

SOURCE_TYPES = ("website", "rss", "application")
CHANNELS = ("email", "telegram")
SENTIMENTS = ("positive", "neutral", "negative")
TERMINAL_STATUSES = ("completed", "failed")
TRIGGER_MANUAL = "manual"


def normalize_trigger(value: object) -> str:
    """A job is triggered manually or by a schedule id; anything else is rejected."""
    if value is None or value == TRIGGER_MANUAL:
        return TRIGGER_MANUAL
    if isinstance(value, bool):
        raise ValueError(f"invalid triggered_by: {value!r}")
    if isinstance(value, int):
        schedule_id = value
    elif isinstance(value, str) and value.strip().isdecimal():
        schedule_id = int(value.strip())
    else:
        raise ValueError(f"invalid triggered_by: {value!r}")
    if schedule_id < 1:
        raise ValueError(f"invalid triggered_by: {value!r}")
    return str(schedule_id)


@dataclass(frozen=True)
class Source:
    id: int
    name: str
    url: str
    type: str
    tags: list[str]
    enabled: bool
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Schedule:
    id: int
    name: str
    cron: str
    timezone: str
    enabled: bool
    next_fire_at: str | None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class DeliveryPreference:
    id: int
    channel: str
    address: str
    schedule_id: int | None
    metadata: dict[str, Any]
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class AggregationJob:
    id: int
    status: str
    source_ids: list[int] | None
    force: bool
    triggered_by: str
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    error: str | None
    result: dict[str, object] | None = None

    @property
    def schedule_id(self) -> int | None:
        if not self.triggered_by.isdecimal():
            return None
        return int(self.triggered_by)


@dataclass(frozen=True)
class Summary:
    id: int
    job_id: int
    source_id: int
    topic: str
    summary: str
    sentiment: str
    key_entities: list[str]
    tags: list[str]
    created_at: str
    source_url: str | None
    content_hash: str | None = None


@dataclass(frozen=True)
class ContentItem:
    title: str
    text: str
    url: str | None = None
    published_at: str | None = None


@dataclass(frozen=True)
class SummaryDraft:
    topic: str
    summary: str
    sentiment: str
    key_entities: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


def source_to_wire(source: Source) -> dict[str, object]:
    return {
        "id": source.id,
        "name": source.name,
        "url": source.url,
        "type": source.type,
        "tags": list(source.tags),
        "enabled": source.enabled,
        "createdAt": source.created_at,
        "updatedAt": source.updated_at,
    }


def schedule_to_wire(schedule: Schedule) -> dict[str, object]:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "cron": schedule.cron,
        "timezone": schedule.timezone,
        "enabled": schedule.enabled,
        "nextFireAt": schedule.next_fire_at,
        "createdAt": schedule.created_at,
        "updatedAt": schedule.updated_at,
    }


def preference_to_wire(preference: DeliveryPreference) -> dict[str, object]:
    return {
        "id": preference.id,
        "channel": preference.channel,
        "address": preference.address,
        "scheduleId": preference.schedule_id,
        "metadata": dict(preference.metadata),
        "createdAt": preference.created_at,
        "updatedAt": preference.updated_at,
    }


def job_to_wire(job: AggregationJob) -> dict[str, object]:
    triggered_by: object = job.triggered_by
    if job.schedule_id is not None:
        triggered_by = job.schedule_id
    return {
        "id": job.id,
        "status": job.status,
        "sourceIds": list(job.source_ids) if job.source_ids is not None else None,
        "force": job.force,
        "triggeredBy": triggered_by,
        "requestedAt": job.requested_at,
        "startedAt": job.started_at,
        "finishedAt": job.finished_at,
        "error": job.error,
        "result": job.result,
    }


def summary_to_wire(summary: Summary) -> dict[str, object]:
    return {
        "id": summary.id,
        "jobId": summary.job_id,
        "sourceId": summary.source_id,
        "topic": summary.topic,
        "summary": summary.summary,
        "sentiment": summary.sentiment,
        "keyEntities": list(summary.key_entities),
        "tags": list(summary.tags),
        "createdAt": summary.created_at,
        "sourceUrl": summary.source_url,
    }


@dataclass(frozen=True)
class AggregationOutcome:
    status: str
    error: str | None
    result: dict[str, object]
    summaries: list[Summary] = field(default_factory=list)
