import sqlite3

import pytest

from newsrelay.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    apply_migrations(conn)

    versions = [row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_database_rejects_second_running_job(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)
    insert = "INSERT INTO jobs (status, requested_at) VALUES ('running', '2025-01-01T00:00:00+00:00')"
    conn.execute(insert)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(insert)
