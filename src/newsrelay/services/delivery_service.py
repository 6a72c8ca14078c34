from __future__ import annotations

import logging
from typing import Any

from .. import storage
from ..models import CHANNELS, preference_to_wire
from ..utils import log_event

logger = logging.getLogger("newsrelay.services.delivery")


def list_preferences(conn: Any) -> list[dict[str, Any]]:
    return [preference_to_wire(item) for item in storage.list_delivery_preferences(conn)]


def get_preference(conn: Any, preference_id: int) -> dict[str, Any] | None:
    preference = storage.get_delivery_preference(conn, preference_id)
    return preference_to_wire(preference) if preference else None


def create_preference(conn: Any, payload: dict[str, Any]) -> dict[str, Any]:
    channel = str(payload.get("channel") or "").strip()
    if channel not in CHANNELS:
        raise ValueError(f"channel must be one of {', '.join(CHANNELS)}")
    address = str(payload.get("address") or "").strip()
    if not address:
        raise ValueError("address is required")
    schedule_id = payload.get("schedule_id")
    _require_schedule(conn, schedule_id)
    preference = storage.insert_delivery_preference(
        conn,
        channel=channel,
        address=address,
        schedule_id=schedule_id,
        metadata=payload.get("metadata") or {},
    )
    log_event(
        logger,
        logging.INFO,
        "delivery_preference_created",
        preference_id=preference.id,
        channel=channel,
        schedule_id=schedule_id,
    )
    return preference_to_wire(preference)


def update_preference(
    conn: Any, preference_id: int, changes: dict[str, Any]
) -> dict[str, Any] | None:
    if storage.get_delivery_preference(conn, preference_id) is None:
        return None
    if "channel" in changes and changes["channel"] not in CHANNELS:
        raise ValueError(f"channel must be one of {', '.join(CHANNELS)}")
    if "schedule_id" in changes:
        _require_schedule(conn, changes["schedule_id"])
    preference = storage.update_delivery_preference(conn, preference_id, changes)
    log_event(
        logger,
        logging.INFO,
        "delivery_preference_updated",
        preference_id=preference_id,
        fields=sorted(changes),
    )
    return preference_to_wire(preference) if preference else None


def delete_preference(conn: Any, preference_id: int) -> bool:
    deleted = storage.delete_delivery_preference(conn, preference_id)
    if deleted:
        log_event(logger, logging.INFO, "delivery_preference_deleted", preference_id=preference_id)
    return deleted


def _require_schedule(conn: Any, schedule_id: Any) -> None:
    if schedule_id is None:
        return
    if storage.get_schedule(conn, int(schedule_id)) is None:
        raise ValueError("schedule_not_found")
