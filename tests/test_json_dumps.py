import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from uuid import UUID

from pydantic import BaseModel

from feedsentry.models import Coercion, RowError
from feedsentry.storage import claim_next_job, complete_job, enqueue_job, get_job
from feedsentry.utils import json_dumps, json_loads_or


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
        "coercion": Coercion("price", "$5", 5.0, "numeric"),
        "enum": Color.RED,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/feedsentry"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "model": PayloadModel(name="example"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    decoded = json.loads(json_dumps(payload))
    assert decoded["dataclass"]["value"] == "ok"
    assert decoded["coercion"] == {
        "field": "price",
        "raw_value": "$5",
        "coerced_value": 5.0,
        "note": "numeric",
    }
    assert decoded["enum"] == "red"
    assert decoded["datetime"] == "2025-01-01T00:00:00.000000+00:00"
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/feedsentry"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert decoded["model"]["name"] == "example"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_or_default():
    assert json_loads_or(None, {}) == {}
    assert json_loads_or("{broken", []) == []
    assert json_loads_or('{"a": 1}', {}) == {"a": 1}


def test_job_result_serialization_handles_dataclasses(conn):
    job_id = enqueue_job(conn, "prune_jobs", None).job_id
    job = claim_next_job(conn, "worker-1")
    assert job is not None
    result = {"errors": [RowError("price", "INVALID_PRICE", "Missing or invalid price", "abc")]}
    assert complete_job(conn, job_id, result=result)
    stored = get_job(conn, job_id)
    assert stored.result["errors"][0]["code"] == "INVALID_PRICE"
