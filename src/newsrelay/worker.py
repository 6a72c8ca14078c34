from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from dataclasses import replace

from .config import ConfigError, load_runtime_config
from .db import get_state_db_path
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .runtime import Runtime
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("newsrelay.worker")


def _load_config(logger: logging.Logger, workers: int | None):
    try:
        conn = init_db(get_state_db_path())
        try:
            config = load_runtime_config(conn)
        finally:
            conn.close()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    if workers is not None:
        config = replace(config, jobs=replace(config.jobs, workers=max(0, workers)))
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(config.paths.data_dir, get_state_db_path()))
    return config


def run_once(worker_id: str) -> int:
    """Fire due schedules, then claim and run at most one job."""
    logger = _setup_logging()
    config = _load_config(logger, workers=0)
    if config is None:
        return 1
    runtime = Runtime(get_state_db_path(), config=config, start_threads=False, worker_id=worker_id)
    runtime.initialize()
    if config.scheduler.enabled:
        runtime.scheduler.tick()
    job = runtime.queue.run_once(worker_id)
    runtime.shutdown()
    if job is None:
        log_event(logger, logging.INFO, "no_pending_jobs", worker_id=worker_id)
        return 0
    return 1 if job.status == "failed" else 0


def run_loop(worker_id: str, workers: int | None = None) -> int:
    logger = _setup_logging()
    config = _load_config(logger, workers)
    if config is None:
        return 1
    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        log_event(logger, logging.INFO, "worker_signal", signal=signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    runtime = Runtime(get_state_db_path(), config=config, worker_id=worker_id)
    runtime.initialize()
    log_event(
        logger,
        logging.INFO,
        "worker_started",
        worker_id=worker_id,
        workers=config.jobs.workers,
        scheduler=config.scheduler.enabled,
    )
    try:
        stop.wait()
    finally:
        runtime.shutdown()
    log_event(logger, logging.INFO, "worker_stopped", worker_id=worker_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsrelay-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads (defaults to jobs.workers from the runtime config)",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once(args.worker_id)
    return run_loop(args.worker_id, args.workers)


if __name__ == "__main__":
    raise SystemExit(main())
