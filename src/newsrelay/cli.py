from __future__ import annotations

import argparse
import logging
import os
import time

from .config import ConfigError, load_config_file, set_runtime_config
from .db import get_state_db_path
from .jobs import JobRequest
from .models import TERMINAL_STATUSES
from .runtime import Runtime
from .services.sources_service import import_sources
from .storage import get_job, init_db, list_jobs, list_schedules, list_sources, list_summaries
from .utils import configure_logging, log_event, json_dumps


def _setup_logging() -> logging.Logger:
    return configure_logging("newsrelay")


def _db_path(args: argparse.Namespace) -> str:
    return args.db or get_state_db_path()


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = Runtime(_db_path(args), start_threads=False)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    job_id = runtime.enqueue(JobRequest(source_ids=args.source_ids, force=args.force))
    log_event(logger, logging.INFO, "run_enqueued", job_id=job_id)
    if not args.wait:
        return 0

    conn = init_db(_db_path(args))
    try:
        while True:
            job = get_job(conn, job_id)
            if job is None:
                log_event(logger, logging.ERROR, "job_missing", job_id=job_id)
                return 1
            if job.status in TERMINAL_STATUSES:
                break
            # Runs whatever is first in line; another process may hold the slot.
            if runtime.queue.run_once(f"cli-{os.getpid()}") is None:
                time.sleep(args.poll)
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "run_finished",
        job_id=job.id,
        status=job.status,
        error=job.error,
        result=json_dumps(job.result),
    )
    return 1 if job.status == "failed" else 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    for job in list_jobs(conn, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            status=job.status,
            triggered_by=job.triggered_by,
            requested_at=job.requested_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    conn.close()
    return 0


def _cmd_summaries_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    for summary in list_summaries(conn, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "summary",
            summary_id=summary.id,
            job_id=summary.job_id,
            source_id=summary.source_id,
            sentiment=summary.sentiment,
            topic=json_dumps(summary.topic),
        )
    conn.close()
    return 0


def _cmd_schedules_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    for schedule in list_schedules(conn):
        log_event(
            logger,
            logging.INFO,
            "schedule",
            schedule_id=schedule.id,
            name=json_dumps(schedule.name),
            cron=json_dumps(schedule.cron),
            timezone=schedule.timezone,
            enabled=schedule.enabled,
            next_fire_at=schedule.next_fire_at,
        )
    conn.close()
    return 0


def _cmd_schedules_refresh(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = Runtime(_db_path(args), start_threads=False)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    job_ids = runtime.scheduler.refresh()
    log_event(logger, logging.INFO, "schedules_refreshed", enqueued=job_ids)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    sources = list_sources(conn)
    conn.close()
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `newsrelay sources import sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            name=json_dumps(source.name),
            type=source.type,
            enabled=source.enabled,
            url=source.url,
            tags=",".join(source.tags),
        )
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        result = import_sources(conn, args.path)
    except (OSError, ValueError) as exc:
        log_event(logger, logging.ERROR, "sources_import_error", path=args.path, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "sources_imported", path=args.path, **result)
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        cfg = load_config_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = init_db(_db_path(args))
    try:
        set_runtime_config(conn, cfg)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    if args.db:
        os.environ["NR_DATA_DIR"] = os.path.dirname(os.path.abspath(args.db))
    log_event(logger, logging.INFO, "api_starting", host=args.host, port=args.port)
    uvicorn.run("newsrelay.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsrelay", description="newsrelay CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $NR_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Enqueue a manual aggregation job")
    run_parser.add_argument(
        "--source-id",
        dest="source_ids",
        type=int,
        action="append",
        default=None,
        help="Limit the run to this source id (repeatable)",
    )
    run_parser.add_argument("--force", action="store_true", help="Bypass the relevance filter")
    run_parser.add_argument(
        "--wait", action="store_true", help="Run queued jobs in this process until this one finishes"
    )
    run_parser.add_argument("--poll", type=float, default=1.0, help="Seconds between status checks")
    run_parser.set_defaults(func=_cmd_run)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    summaries_parser = subparsers.add_parser("summaries", help="Summary commands")
    summaries_subparsers = summaries_parser.add_subparsers(dest="summaries_command", required=True)
    summaries_list = summaries_subparsers.add_parser("list", help="List recent summaries")
    summaries_list.add_argument("--limit", type=int, default=20, help="Number of summaries to show")
    summaries_list.set_defaults(func=_cmd_summaries_list)

    schedules_parser = subparsers.add_parser("schedules", help="Schedule commands")
    schedules_subparsers = schedules_parser.add_subparsers(dest="schedules_command", required=True)
    schedules_list = schedules_subparsers.add_parser("list", help="List schedules")
    schedules_list.set_defaults(func=_cmd_schedules_list)
    schedules_refresh = schedules_subparsers.add_parser(
        "refresh", help="Recompute next fire times and enqueue missed schedules"
    )
    schedules_refresh.set_defaults(func=_cmd_schedules_refresh)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)
    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)
    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    config_parser = subparsers.add_parser("config", help="Runtime config commands")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_import = config_subparsers.add_parser(
        "import", help="Load a YAML file into the runtime config"
    )
    config_import.add_argument("path", help="Path to config YAML file")
    config_import.set_defaults(func=_cmd_config_import)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve_parser.add_argument("--host", default=os.environ.get("NR_API_HOST", "0.0.0.0"))
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("NR_API_PORT", "8000")))
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
