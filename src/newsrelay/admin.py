from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Iterator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import ConfigError, bootstrap_runtime_config, get_runtime_config, set_runtime_config
from .db import DBConn, get_state_db_path
from .jobs import JobRequest
from .models import job_to_wire, summary_to_wire
from .runtime import Runtime
from .schemas import (
    ChannelSecretRequest,
    DeliveryCreate,
    DeliveryUpdate,
    RunRequest,
    RuntimeConfigRequest,
    ScheduleCreate,
    ScheduleUpdate,
    SourceCreate,
    SourceUpdate,
)
from .services import channels_service, delivery_service, schedules_service, sources_service
from .storage import (
    count_jobs_by_status,
    get_job,
    init_db,
    list_delivery_attempts,
    list_jobs,
    list_summaries,
    list_summaries_for_job,
)
from .utils import configure_logging, log_event

app = FastAPI(title="newsrelay API")

_RUNTIME: Runtime | None = None
_RUNTIME_LOCK = threading.Lock()


def _embedded() -> bool:
    return os.environ.get("NR_API_EMBEDDED", "").strip().lower() in {"1", "true", "yes"}


def get_runtime() -> Runtime:
    """Process-wide runtime; its threads only run when NR_API_EMBEDDED is set."""
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            _RUNTIME = Runtime(get_state_db_path(), start_threads=_embedded())
        runtime = _RUNTIME
    if _embedded():
        runtime.initialize()
    return runtime


def get_conn() -> Iterator[DBConn]:
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("NR_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse({"error": "; ".join(errors)}, status_code=400)


@app.on_event("startup")
def _startup() -> None:
    configure_logging("newsrelay.admin")
    if _embedded():
        try:
            get_runtime()
        except ConfigError as exc:
            log_event(logging.getLogger("newsrelay.admin"), logging.ERROR, "config_error", error=str(exc))


@app.on_event("shutdown")
def _shutdown() -> None:
    if _RUNTIME is not None:
        _RUNTIME.shutdown()


@app.get("/health")
def health(conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
        "jobs": count_jobs_by_status(conn),
    }


# Sources


@app.get("/sources")
def sources_list(conn: DBConn = Depends(get_conn)) -> list[dict[str, object]]:
    return sources_service.list_sources(conn)


@app.post("/sources", status_code=201, dependencies=[Depends(_require_admin_token)])
def sources_create(payload: SourceCreate, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        return sources_service.create_source(conn, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/sources/{source_id}")
def sources_read(source_id: int, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    source = sources_service.get_source(conn, source_id)
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    return source


@app.patch("/sources/{source_id}", dependencies=[Depends(_require_admin_token)])
def sources_update(
    source_id: int, payload: SourceUpdate, conn: DBConn = Depends(get_conn)
) -> dict[str, object]:
    try:
        source = sources_service.update_source(conn, source_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not source:
        raise HTTPException(status_code=404, detail="source_not_found")
    return source


@app.delete("/sources/{source_id}", dependencies=[Depends(_require_admin_token)])
def sources_delete(source_id: int, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    if not sources_service.delete_source(conn, source_id):
        raise HTTPException(status_code=404, detail="source_not_found")
    return {"success": True}


# Schedules


@app.get("/schedules")
def schedules_list(conn: DBConn = Depends(get_conn)) -> list[dict[str, object]]:
    return schedules_service.list_schedules(conn)


@app.post("/schedules", status_code=201, dependencies=[Depends(_require_admin_token)])
def schedules_create(
    payload: ScheduleCreate,
    conn: DBConn = Depends(get_conn),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, object]:
    try:
        created = schedules_service.create_schedule(conn, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    runtime.refresh_schedules()
    return schedules_service.get_schedule(conn, int(created["id"])) or created


@app.patch("/schedules/{schedule_id}", dependencies=[Depends(_require_admin_token)])
def schedules_update(
    schedule_id: int,
    payload: ScheduleUpdate,
    conn: DBConn = Depends(get_conn),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, object]:
    try:
        updated = schedules_service.update_schedule(
            conn, schedule_id, payload.model_dump(exclude_unset=True)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not updated:
        raise HTTPException(status_code=404, detail="schedule_not_found")
    runtime.refresh_schedules()
    return schedules_service.get_schedule(conn, schedule_id) or updated


@app.delete("/schedules/{schedule_id}", dependencies=[Depends(_require_admin_token)])
def schedules_delete(
    schedule_id: int,
    conn: DBConn = Depends(get_conn),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, object]:
    if not schedules_service.delete_schedule(conn, schedule_id):
        raise HTTPException(status_code=404, detail="schedule_not_found")
    runtime.refresh_schedules()
    return {"success": True}


# Delivery preferences


@app.get("/delivery")
def delivery_list(conn: DBConn = Depends(get_conn)) -> list[dict[str, object]]:
    return delivery_service.list_preferences(conn)


@app.post("/delivery", status_code=201, dependencies=[Depends(_require_admin_token)])
def delivery_create(payload: DeliveryCreate, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        return delivery_service.create_preference(conn, payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.patch("/delivery/{preference_id}", dependencies=[Depends(_require_admin_token)])
def delivery_update(
    preference_id: int, payload: DeliveryUpdate, conn: DBConn = Depends(get_conn)
) -> dict[str, object]:
    try:
        updated = delivery_service.update_preference(
            conn, preference_id, payload.model_dump(exclude_unset=True)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not updated:
        raise HTTPException(status_code=404, detail="delivery_preference_not_found")
    return updated


@app.delete("/delivery/{preference_id}", dependencies=[Depends(_require_admin_token)])
def delivery_delete(preference_id: int, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    if not delivery_service.delete_preference(conn, preference_id):
        raise HTTPException(status_code=404, detail="delivery_preference_not_found")
    return {"success": True}


# Jobs and summaries


@app.post("/run", dependencies=[Depends(_require_admin_token)])
def run(payload: RunRequest | None = None, runtime: Runtime = Depends(get_runtime)) -> dict[str, object]:
    payload = payload or RunRequest()
    job_id = runtime.enqueue(JobRequest(source_ids=payload.source_ids, force=payload.force))
    return {"enqueued": True, "jobId": job_id}


@app.get("/status")
def status(
    limit: int = Query(default=10, ge=1, le=200), conn: DBConn = Depends(get_conn)
) -> list[dict[str, object]]:
    return [job_to_wire(job) for job in list_jobs(conn, limit)]


@app.get("/jobs/{job_id}")
def job_read(job_id: int, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    job = get_job(conn, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job_not_found")
    payload = job_to_wire(job)
    payload["summaries"] = [summary_to_wire(item) for item in list_summaries_for_job(conn, job_id)]
    payload["deliveries"] = list_delivery_attempts(conn, job_id)
    return payload


@app.get("/summaries")
def summaries(
    limit: int = Query(default=20, ge=1, le=500), conn: DBConn = Depends(get_conn)
) -> list[dict[str, object]]:
    return [summary_to_wire(item) for item in list_summaries(conn, limit)]


# Admin


admin_router = APIRouter(prefix="/admin", dependencies=[Depends(_require_admin_token)])


@admin_router.get("/config/runtime")
def runtime_config_get(conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@admin_router.put("/config/runtime")
def runtime_config_set(
    payload: RuntimeConfigRequest, conn: DBConn = Depends(get_conn)
) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@admin_router.get("/channels/{channel}/secret")
def channel_secret_status(channel: str, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        return channels_service.get_channel_secret_status(conn, channel)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@admin_router.put("/channels/{channel}/secret")
def channel_secret_set(
    channel: str, payload: ChannelSecretRequest, conn: DBConn = Depends(get_conn)
) -> dict[str, object]:
    try:
        return channels_service.set_channel_secret(conn, channel, payload.secret)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@admin_router.delete("/channels/{channel}/secret")
def channel_secret_clear(channel: str, conn: DBConn = Depends(get_conn)) -> dict[str, object]:
    try:
        cleared = channels_service.clear_channel_secret(conn, channel)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": cleared}


app.include_router(admin_router)


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("newsrelay")
    except Exception:  # noqa: BLE001
        return "unknown"
