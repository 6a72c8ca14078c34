from newsrelay.storage import (
    claim_next_job,
    compare_and_set_next_fire,
    enqueue_job,
    get_job,
    insert_schedule,
    list_jobs,
)
from newsrelay.worker import build_parser, run_once


def test_run_once_without_jobs(conn, make_config):
    make_config()
    assert run_once("worker-test") == 0
    assert list_jobs(conn) == []


def test_run_once_executes_pending_job(conn, make_config):
    make_config()
    job_id = enqueue_job(conn)

    assert run_once("worker-test") == 0

    job = list_jobs(conn)[0]
    assert job.id == job_id
    assert job.status == "completed"
    assert job.locked_by == "worker-test"


def test_run_once_catches_up_missed_schedule(conn, make_config):
    make_config()
    schedule = insert_schedule(conn, name="nightly", cron="0 2 * * *", timezone_name="UTC", enabled=True)
    compare_and_set_next_fire(conn, schedule.id, None, "2020-01-01T02:00:00+00:00")

    assert run_once("worker-test") == 0

    jobs = list_jobs(conn)
    assert len(jobs) == 1
    assert jobs[0].triggered_by == str(schedule.id)
    assert jobs[0].status == "completed"


def test_parser_defaults(monkeypatch):
    monkeypatch.setenv("HOSTNAME", "relay-1")
    args = build_parser().parse_args(["--once"])
    assert args.once is True
    assert args.workers is None
    assert build_parser().parse_args([]).worker_id == "relay-1"


def test_run_once_recovers_crashed_job_before_claiming(conn, make_config):
    make_config()
    orphan = enqueue_job(conn)
    waiting = enqueue_job(conn)
    claim_next_job(conn, "dead-worker")
    conn.execute("UPDATE jobs SET locked_at = ? WHERE id = ?", ("2020-01-01T00:00:00+00:00", orphan))
    conn.commit()

    assert run_once("worker-test") == 0

    assert get_job(conn, orphan).status == "failed"
    assert get_job(conn, orphan).error == "orphaned_by_restart"
    assert get_job(conn, waiting).status == "completed"
