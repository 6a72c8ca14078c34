from __future__ import annotations

import logging
from typing import Any

from .. import storage
from ..cron import resolve_timezone, validate_cron
from ..models import schedule_to_wire
from ..utils import log_event

logger = logging.getLogger("newsrelay.services.schedules")


def list_schedules(conn: Any) -> list[dict[str, Any]]:
    return [schedule_to_wire(schedule) for schedule in storage.list_schedules(conn)]


def get_schedule(conn: Any, schedule_id: int) -> dict[str, Any] | None:
    schedule = storage.get_schedule(conn, schedule_id)
    return schedule_to_wire(schedule) if schedule else None


def create_schedule(conn: Any, payload: dict[str, Any]) -> dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    cron = validate_cron(str(payload.get("cron") or ""))
    timezone_name = resolve_timezone(str(payload.get("timezone") or "UTC")).key
    schedule = storage.insert_schedule(
        conn,
        name=name,
        cron=cron,
        timezone_name=timezone_name,
        enabled=bool(payload.get("enabled", True)),
    )
    log_event(logger, logging.INFO, "schedule_created", schedule_id=schedule.id, cron=cron)
    return schedule_to_wire(schedule)


def update_schedule(conn: Any, schedule_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
    if storage.get_schedule(conn, schedule_id) is None:
        return None
    changes = dict(changes)
    if changes.get("cron") is not None:
        changes["cron"] = validate_cron(str(changes["cron"]))
    if changes.get("timezone") is not None:
        changes["timezone"] = resolve_timezone(str(changes["timezone"])).key
    changes = {key: value for key, value in changes.items() if value is not None}
    schedule = storage.update_schedule(conn, schedule_id, changes)
    log_event(
        logger, logging.INFO, "schedule_updated", schedule_id=schedule_id, fields=sorted(changes)
    )
    return schedule_to_wire(schedule) if schedule else None


def delete_schedule(conn: Any, schedule_id: int) -> bool:
    # Bound delivery preferences go with the schedule (ON DELETE CASCADE).
    deleted = storage.delete_schedule(conn, schedule_id)
    if deleted:
        log_event(logger, logging.INFO, "schedule_deleted", schedule_id=schedule_id)
    return deleted
