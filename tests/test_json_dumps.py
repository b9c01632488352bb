import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from scourwatch.models import UnitOutcome
from scourwatch.services.job_store import DBJobStore
from scourwatch.utils import json_dumps


class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    value: str


class PayloadModel(BaseModel):
    name: str


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Payload(value="ok"),
        "outcome": UnitOutcome(unit_id="src-01", label="Source 1", succeeded=True, created=2),
        "enum": Color.RED,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/scourwatch"),
        "model": PayloadModel(name="example"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["outcome"]["created"] == 2
    assert decoded["enum"] == "red"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/scourwatch"
    assert decoded["model"]["name"] == "example"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_db_job_store_serializes_complex_values(tmp_path):
    store = DBJobStore(str(tmp_path / "state.sqlite3"))
    store.set(
        "scour-job-complex",
        {"when": datetime(2025, 1, 1, tzinfo=timezone.utc), "ids": ("a", "b"), "status": Color.RED},
    )
    assert store.get("scour-job-complex") == {
        "when": "2025-01-01T00:00:00+00:00",
        "ids": ["a", "b"],
        "status": "red",
    }
