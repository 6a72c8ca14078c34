import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel

from newsrelay.storage import claim_next_job, complete_job, enqueue_job, get_job
from newsrelay.utils import json_dumps, json_loads


class Channel(Enum):
    EMAIL = "email"


@dataclass
class Counts:
    targeted: int


class TopicModel(BaseModel):
    name: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Counts(targeted=2),
        "enum": Channel.EMAIL,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/newsrelay"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": TopicModel(name="markets"),
        "set": {"b", "a"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"] == {"targeted": 2}
    assert decoded["enum"] == "email"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/newsrelay"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"]["name"] == "markets"
    assert decoded["set"] == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_falls_back_to_default():
    assert json_loads(None, []) == []
    assert json_loads("{not json", {"ok": False}) == {"ok": False}
    assert json_loads("[1, 2]", []) == [1, 2]


def test_job_result_serialization_handles_complex_types(conn):
    job_id = enqueue_job(conn)
    assert claim_next_job(conn, "worker-1") is not None
    result = {
        "counts": Counts(targeted=1),
        "channel": Channel.EMAIL,
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }
    assert complete_job(conn, job_id, result=result) is True

    job = get_job(conn, job_id)
    assert job.result["counts"] == {"targeted": 1}
    assert job.result["channel"] == "email"
