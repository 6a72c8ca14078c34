from __future__ import annotations

import pytest

from newsrelay.config import DEFAULT_CONFIG, load_runtime_config, merge_config, set_runtime_config
from newsrelay.db import get_state_db_path
from newsrelay.storage import init_db

_ISOLATED_ENV = (
    "NR_ADMIN_TOKEN",
    "NR_API_EMBEDDED",
    "NR_MASTER_KEY",
    "NR_KEY_ID",
    "NR_EMAIL_API_KEY",
    "NR_TELEGRAM_BOT_TOKEN",
    "NR_LLM_BASE_URL",
    "NR_LLM_API_KEY",
    "NR_LLM_MODEL",
    "NR_LOG_FILE",
    "NR_LOG_LEVELS",
)


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path, monkeypatch):
    monkeypatch.setenv("NR_DATA_DIR", str(tmp_path / "data"))
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path() -> str:
    return get_state_db_path()


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def make_config(conn, tmp_path):
    """Store a runtime config overlaid on the defaults and return it typed."""

    def _make(overrides: dict | None = None):
        base = merge_config(
            DEFAULT_CONFIG,
            {
                "paths": {
                    "data_dir": str(tmp_path / "data"),
                    "state_db": str(tmp_path / "data" / "state.sqlite3"),
                },
                "http": {"max_retries": 0, "backoff_seconds": 0},
                "delivery": {"backoff_seconds": 0.0},
            },
        )
        set_runtime_config(conn, merge_config(base, overrides or {}))
        return load_runtime_config(conn)

    return _make
