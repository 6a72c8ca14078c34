from __future__ import annotations

import logging
from typing import Any

import yaml

from .. import storage
from ..models import SOURCE_TYPES, source_to_wire
from ..utils import log_event

logger = logging.getLogger("newsrelay.services.sources")


def list_sources(conn: Any) -> list[dict[str, Any]]:
    return [source_to_wire(source) for source in storage.list_sources(conn)]


def get_source(conn: Any, source_id: int) -> dict[str, Any] | None:
    source = storage.get_source(conn, source_id)
    return source_to_wire(source) if source else None


def create_source(conn: Any, payload: dict[str, Any]) -> dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    url = str(payload.get("url") or "").strip()
    if not url:
        raise ValueError("url is required")
    source_type = str(payload.get("type") or "website").strip()
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"type must be one of {', '.join(SOURCE_TYPES)}")
    source = storage.insert_source(
        conn,
        name=name,
        url=url,
        source_type=source_type,
        tags=_parse_tags(payload.get("tags")),
        enabled=bool(payload.get("enabled", True)),
    )
    log_event(logger, logging.INFO, "source_created", source_id=source.id, type=source.type)
    return source_to_wire(source)


def update_source(conn: Any, source_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
    if storage.get_source(conn, source_id) is None:
        return None
    if "type" in changes and changes["type"] not in SOURCE_TYPES:
        raise ValueError(f"type must be one of {', '.join(SOURCE_TYPES)}")
    if "tags" in changes:
        changes = {**changes, "tags": _parse_tags(changes["tags"])}
    source = storage.update_source(conn, source_id, changes)
    log_event(logger, logging.INFO, "source_updated", source_id=source_id, fields=sorted(changes))
    return source_to_wire(source) if source else None


def delete_source(conn: Any, source_id: int) -> bool:
    deleted = storage.delete_source(conn, source_id)
    if deleted:
        log_event(logger, logging.INFO, "source_deleted", source_id=source_id)
    return deleted


def import_sources(conn: Any, path: str) -> dict[str, int]:
    """Create sources listed in a YAML file; entries whose URL already exists are skipped.

    The file holds either a list of sources or a mapping with a ``sources`` list.
    """
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("sources") or []
    if not isinstance(data, list):
        raise ValueError("sources file must contain a list of sources")
    existing = {source.url for source in storage.list_sources(conn)}
    created = 0
    skipped = 0
    for entry in data:
        if not isinstance(entry, dict):
            raise ValueError("each source entry must be a mapping")
        url = str(entry.get("url") or "").strip()
        if url in existing:
            skipped += 1
            continue
        create_source(conn, entry)
        existing.add(url)
        created += 1
    return {"created": created, "skipped": skipped}


def _parse_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        raise ValueError("tags must be a list or comma-separated string")
    tags: list[str] = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags
