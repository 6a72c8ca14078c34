from __future__ import annotations

from typing import Any, Iterable

from .db import DBConn, connect_db, get_state_db_path
from .models import (
    TRIGGER_MANUAL,
    AggregationJob,
    DeliveryPreference,
    Schedule,
    Source,
    Summary,
    SummaryDraft,
    normalize_trigger,
)
from .utils import json_dumps, json_loads, utc_now_iso, utc_now_iso_offset

SCHEDULES_VERSION_KEY = "schedules.version"

_SOURCE_COLUMNS = "id, name, url, type, tags_json, enabled, created_at, updated_at"
_SCHEDULE_COLUMNS = "id, name, cron, timezone, enabled, next_fire_at, created_at, updated_at"
_PREFERENCE_COLUMNS = "id, channel, address, schedule_id, metadata_json, created_at, updated_at"
_JOB_COLUMNS = (
    "id, status, source_ids_json, force, triggered_by, requested_at, started_at, "
    "finished_at, locked_by, error, result_json"
)
_SUMMARY_COLUMNS = (
    "id, job_id, source_id, topic, summary, sentiment, key_entities_json, tags_json, "
    "created_at, source_url, content_hash"
)


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path or get_state_db_path())


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    return json_loads(row[0], default)


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Sources


def list_sources(conn: Any, enabled_only: bool = False) -> list[Source]:
    sql = f"SELECT {_SOURCE_COLUMNS} FROM sources"
    if enabled_only:
        sql += " WHERE enabled = 1"
    sql += " ORDER BY id"
    return [_row_to_source(row) for row in conn.execute(sql).fetchall()]


def get_source(conn: Any, source_id: int) -> Source | None:
    row = conn.execute(
        f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
    ).fetchone()
    return _row_to_source(row) if row else None


def insert_source(
    conn: Any,
    *,
    name: str,
    url: str,
    source_type: str,
    tags: Iterable[str],
    enabled: bool,
) -> Source:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO sources (name, url, type, tags_json, enabled, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (name, url, source_type, json_dumps(_unique(tags)), 1 if enabled else 0, now, now),
    )
    conn.commit()
    return get_source(conn, cursor.lastrowid)  # type: ignore[return-value]


def update_source(conn: Any, source_id: int, changes: dict[str, object]) -> Source | None:
    columns = {
        "name": "name",
        "url": "url",
        "type": "type",
        "tags": "tags_json",
        "enabled": "enabled",
    }
    assignments: list[str] = []
    params: list[object] = []
    for key, value in changes.items():
        if key not in columns:
            continue
        if key == "tags":
            value = json_dumps(_unique(value or []))  # type: ignore[arg-type]
        elif key == "enabled":
            value = 1 if value else 0
        assignments.append(f"{columns[key]} = ?")
        params.append(value)
    if assignments:
        assignments.append("updated_at = ?")
        params.extend([utc_now_iso(), source_id])
        conn.execute(f"UPDATE sources SET {', '.join(assignments)} WHERE id = ?", tuple(params))
        conn.commit()
    return get_source(conn, source_id)


def delete_source(conn: Any, source_id: int) -> bool:
    cursor = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
    conn.commit()
    return cursor.rowcount == 1


# Schedules


def list_schedules(conn: Any) -> list[Schedule]:
    cursor = conn.execute(f"SELECT {_SCHEDULE_COLUMNS} FROM schedules ORDER BY id")
    return [_row_to_schedule(row) for row in cursor.fetchall()]


def get_schedule(conn: Any, schedule_id: int) -> Schedule | None:
    row = conn.execute(
        f"SELECT {_SCHEDULE_COLUMNS} FROM schedules WHERE id = ?", (schedule_id,)
    ).fetchone()
    return _row_to_schedule(row) if row else None


def insert_schedule(
    conn: Any, *, name: str, cron: str, timezone_name: str, enabled: bool
) -> Schedule:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO schedules (name, cron, timezone, enabled, next_fire_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, NULL, ?, ?)
        """,
        (name, cron, timezone_name, 1 if enabled else 0, now, now),
    )
    conn.commit()
    bump_schedules_version(conn)
    return get_schedule(conn, cursor.lastrowid)  # type: ignore[return-value]


def update_schedule(conn: Any, schedule_id: int, changes: dict[str, object]) -> Schedule | None:
    columns = {"name": "name", "cron": "cron", "timezone": "timezone", "enabled": "enabled"}
    assignments: list[str] = []
    params: list[object] = []
    for key, value in changes.items():
        if key not in columns:
            continue
        if key == "enabled":
            value = 1 if value else 0
        assignments.append(f"{columns[key]} = ?")
        params.append(value)
    if assignments:
        # Any mutation invalidates the derived fire time; the next registry
        # refresh recomputes it from the current time.
        assignments.extend(["next_fire_at = NULL", "updated_at = ?"])
        params.extend([utc_now_iso(), schedule_id])
        conn.execute(
            f"UPDATE schedules SET {', '.join(assignments)} WHERE id = ?", tuple(params)
        )
        conn.commit()
        bump_schedules_version(conn)
    return get_schedule(conn, schedule_id)


def delete_schedule(conn: Any, schedule_id: int) -> bool:
    cursor = conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
    conn.commit()
    deleted = cursor.rowcount == 1
    if deleted:
        bump_schedules_version(conn)
    return deleted


def compare_and_set_next_fire(
    conn: Any, schedule_id: int, expected: str | None, next_fire_at: str | None
) -> bool:
    cursor = conn.execute(
        "UPDATE schedules SET next_fire_at = ? WHERE id = ? AND next_fire_at IS ?",
        (next_fire_at, schedule_id, expected),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_schedules_version(conn: Any) -> int:
    return int(get_setting(conn, SCHEDULES_VERSION_KEY, 0) or 0)


def bump_schedules_version(conn: Any) -> int:
    version = get_schedules_version(conn) + 1
    set_setting(conn, SCHEDULES_VERSION_KEY, version)
    return version


# Delivery preferences


def list_delivery_preferences(conn: Any) -> list[DeliveryPreference]:
    cursor = conn.execute(
        f"SELECT {_PREFERENCE_COLUMNS} FROM delivery_preferences ORDER BY id"
    )
    return [_row_to_preference(row) for row in cursor.fetchall()]


def list_preferences_for_schedule(conn: Any, schedule_id: int | None) -> list[DeliveryPreference]:
    if schedule_id is None:
        cursor = conn.execute(
            f"SELECT {_PREFERENCE_COLUMNS} FROM delivery_preferences "
            "WHERE schedule_id IS NULL ORDER BY id"
        )
    else:
        cursor = conn.execute(
            f"SELECT {_PREFERENCE_COLUMNS} FROM delivery_preferences "
            "WHERE schedule_id = ? ORDER BY id",
            (schedule_id,),
        )
    return [_row_to_preference(row) for row in cursor.fetchall()]


def get_delivery_preference(conn: Any, preference_id: int) -> DeliveryPreference | None:
    row = conn.execute(
        f"SELECT {_PREFERENCE_COLUMNS} FROM delivery_preferences WHERE id = ?",
        (preference_id,),
    ).fetchone()
    return _row_to_preference(row) if row else None


def insert_delivery_preference(
    conn: Any,
    *,
    channel: str,
    address: str,
    schedule_id: int | None,
    metadata: dict[str, Any] | None,
) -> DeliveryPreference:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO delivery_preferences
            (channel, address, schedule_id, metadata_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (channel, address, schedule_id, json_dumps(metadata or {}), now, now),
    )
    conn.commit()
    return get_delivery_preference(conn, cursor.lastrowid)  # type: ignore[return-value]


def update_delivery_preference(
    conn: Any, preference_id: int, changes: dict[str, object]
) -> DeliveryPreference | None:
    columns = {
        "channel": "channel",
        "address": "address",
        "schedule_id": "schedule_id",
        "metadata": "metadata_json",
    }
    assignments: list[str] = []
    params: list[object] = []
    for key, value in changes.items():
        if key not in columns:
            continue
        if key == "metadata":
            value = json_dumps(value or {})
        assignments.append(f"{columns[key]} = ?")
        params.append(value)
    if assignments:
        assignments.append("updated_at = ?")
        params.extend([utc_now_iso(), preference_id])
        conn.execute(
            f"UPDATE delivery_preferences SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        conn.commit()
    return get_delivery_preference(conn, preference_id)


def delete_delivery_preference(conn: Any, preference_id: int) -> bool:
    cursor = conn.execute("DELETE FROM delivery_preferences WHERE id = ?", (preference_id,))
    conn.commit()
    return cursor.rowcount == 1


# Jobs


def enqueue_job(
    conn: Any,
    *,
    source_ids: list[int] | None = None,
    force: bool = False,
    triggered_by: str = TRIGGER_MANUAL,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO jobs (status, source_ids_json, force, triggered_by, requested_at)
        VALUES ('pending', ?, ?, ?, ?)
        """,
        (
            json_dumps(list(source_ids)) if source_ids is not None else None,
            1 if force else 0,
            normalize_trigger(triggered_by),
            utc_now_iso(),
        ),
    )
    conn.commit()
    return int(cursor.lastrowid)


def get_job(conn: Any, job_id: int) -> AggregationJob | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50) -> list[AggregationJob]:
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY id DESC LIMIT ?",
        (limit,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def count_jobs_by_status(conn: Any) -> dict[str, int]:
    counts = {"pending": 0, "running": 0, "completed": 0, "failed": 0}
    for status, count in conn.execute(
        "SELECT status, COUNT(*) FROM jobs GROUP BY status"
    ).fetchall():
        counts[status] = int(count)
    return counts


def claim_next_job(conn: Any, worker_id: str) -> AggregationJob | None:
    with conn.transaction():
        running = conn.execute(
            "SELECT id FROM jobs WHERE status = 'running' LIMIT 1"
        ).fetchone()
        if running:
            return None
        row = conn.execute(
            "SELECT id FROM jobs WHERE status = 'pending' ORDER BY id ASC LIMIT 1"
        ).fetchone()
        if not row:
            return None
        job_id = row[0]
        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (now, worker_id, now, job_id),
        )
        if cursor.rowcount != 1:
            return None
    return get_job(conn, job_id)


def complete_job(
    conn: Any,
    job_id: int,
    *,
    error: str | None = None,
    result: dict[str, object] | None = None,
) -> bool:
    return _finish_job(conn, job_id, "completed", error, result)


def fail_job(
    conn: Any,
    job_id: int,
    error: str,
    result: dict[str, object] | None = None,
) -> bool:
    return _finish_job(conn, job_id, "failed", error, result)


def _finish_job(
    conn: Any,
    job_id: int,
    status: str,
    error: str | None,
    result: dict[str, object] | None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = ?, finished_at = ?, error = ?, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (status, utc_now_iso(), error, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def append_job_error(conn: Any, job_id: int, message: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET error = CASE
            WHEN error IS NULL OR error = '' THEN ?
            ELSE error || '; ' || ?
        END
        WHERE id = ?
        """,
        (message, message, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def renew_job_lease(conn: Any, job_id: int, worker_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs SET locked_at = ?
        WHERE id = ? AND status = 'running' AND locked_by = ?
        """,
        (utc_now_iso(), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def recover_orphaned_jobs(conn: Any, reason: str, lock_timeout_seconds: int) -> list[int]:
    """Fail running jobs whose lease has not been renewed within the timeout."""
    cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
    with conn.transaction():
        rows = conn.execute(
            """
            SELECT id FROM jobs
            WHERE status = 'running' AND (locked_at IS NULL OR locked_at < ?)
            """,
            (cutoff,),
        ).fetchall()
        job_ids = [int(row[0]) for row in rows]
        for job_id in job_ids:
            conn.execute(
                """
                UPDATE jobs
                SET status = 'failed', finished_at = ?, error = CASE
                    WHEN error IS NULL OR error = '' THEN ?
                    ELSE error || '; ' || ?
                END
                WHERE id = ? AND status = 'running'
                """,
                (utc_now_iso(), reason, reason, job_id),
            )
    return job_ids


# Summaries


def insert_summary(
    conn: Any,
    *,
    job_id: int,
    source_id: int,
    draft: SummaryDraft,
    source_url: str | None,
    content_hash: str | None,
) -> Summary:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO summaries
            (job_id, source_id, topic, summary, sentiment, key_entities_json, tags_json,
             source_url, content_hash, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            source_id,
            draft.topic,
            draft.summary,
            draft.sentiment,
            json_dumps(_unique(draft.key_entities)),
            json_dumps(_unique(draft.tags)),
            source_url,
            content_hash,
            now,
        ),
    )
    conn.commit()
    row = conn.execute(
        f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE id = ?", (cursor.lastrowid,)
    ).fetchone()
    return _row_to_summary(row)


def list_summaries(conn: Any, limit: int = 20) -> list[Summary]:
    cursor = conn.execute(
        f"SELECT {_SUMMARY_COLUMNS} FROM summaries ORDER BY id DESC LIMIT ?",
        (limit,),
    )
    return [_row_to_summary(row) for row in cursor.fetchall()]


def list_summaries_for_job(conn: Any, job_id: int) -> list[Summary]:
    cursor = conn.execute(
        f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE job_id = ? ORDER BY id",
        (job_id,),
    )
    return [_row_to_summary(row) for row in cursor.fetchall()]


def get_last_summary_for_source(conn: Any, source_id: int) -> Summary | None:
    row = conn.execute(
        f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE source_id = ? ORDER BY id DESC LIMIT 1",
        (source_id,),
    ).fetchone()
    return _row_to_summary(row) if row else None


# Delivery attempts


def record_delivery_attempt(
    conn: Any,
    *,
    job_id: int,
    preference_id: int | None,
    channel: str,
    address: str,
    status: str,
    attempts: int,
    error: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO delivery_attempts
            (job_id, preference_id, channel, address, status, attempts, error, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (job_id, preference_id, channel, address, status, attempts, error, utc_now_iso()),
    )
    conn.commit()


def list_delivery_attempts(conn: Any, job_id: int) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT preference_id, channel, address, status, attempts, error, created_at
        FROM delivery_attempts
        WHERE job_id = ?
        ORDER BY id
        """,
        (job_id,),
    )
    rows = []
    for preference_id, channel, address, status, attempts, error, created_at in cursor.fetchall():
        rows.append(
            {
                "preferenceId": preference_id,
                "channel": channel,
                "address": address,
                "status": status,
                "attempts": attempts,
                "error": error,
                "createdAt": created_at,
            }
        )
    return rows


def _unique(values: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _row_to_source(row: tuple) -> Source:
    (source_id, name, url, source_type, tags_json, enabled, created_at, updated_at) = row
    return Source(
        id=int(source_id),
        name=name,
        url=url,
        type=source_type,
        tags=list(json_loads(tags_json, [])),
        enabled=bool(enabled),
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_schedule(row: tuple) -> Schedule:
    (schedule_id, name, cron, timezone_name, enabled, next_fire_at, created_at, updated_at) = row
    return Schedule(
        id=int(schedule_id),
        name=name,
        cron=cron,
        timezone=timezone_name,
        enabled=bool(enabled),
        next_fire_at=next_fire_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_preference(row: tuple) -> DeliveryPreference:
    (preference_id, channel, address, schedule_id, metadata_json, created_at, updated_at) = row
    return DeliveryPreference(
        id=int(preference_id),
        channel=channel,
        address=address,
        schedule_id=int(schedule_id) if schedule_id is not None else None,
        metadata=dict(json_loads(metadata_json, {})),
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_job(row: tuple) -> AggregationJob:
    (
        job_id,
        status,
        source_ids_json,
        force,
        triggered_by,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        error,
        result_json,
    ) = row
    source_ids = json_loads(source_ids_json, None)
    return AggregationJob(
        id=int(job_id),
        status=status,
        source_ids=[int(item) for item in source_ids] if source_ids is not None else None,
        force=bool(force),
        triggered_by=triggered_by or TRIGGER_MANUAL,
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        error=error,
        result=json_loads(result_json, None),
    )


def _row_to_summary(row: tuple) -> Summary:
    (
        summary_id,
        job_id,
        source_id,
        topic,
        summary,
        sentiment,
        key_entities_json,
        tags_json,
        created_at,
        source_url,
        content_hash_value,
    ) = row
    return Summary(
        id=int(summary_id),
        job_id=int(job_id),
        source_id=int(source_id),
        topic=topic,
        summary=summary,
        sentiment=sentiment,
        key_entities=list(json_loads(key_entities_json, [])),
        tags=list(json_loads(tags_json, [])),
        created_at=created_at,
        source_url=source_url,
        content_hash=content_hash_value,
    )
