from __future__ import annotations

import base64
import copy

import pytest

from feedsentry.config import DEFAULT_CONFIG, build_config
from feedsentry.storage import init_db, upsert_feed


class RecordingDispatcher:
    def __init__(self, fail_kinds=(), raise_kinds=()):
        self.sent = []
        self.fail_kinds = set(fail_kinds)
        self.raise_kinds = set(raise_kinds)

    def send(self, channel, message):
        kind = message.get("kind")
        if kind in self.raise_kinds:
            raise RuntimeError(f"dispatcher down for {kind}")
        self.sent.append((channel, dict(message)))
        return kind not in self.fail_kinds

    def kinds(self):
        return [message["kind"] for _, message in self.sent]


class StaticFetcher:
    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.calls = 0

    def __call__(self, feed):
        self.calls += 1
        payload = self.payloads[min(self.calls, len(self.payloads)) - 1]
        if isinstance(payload, Exception):
            raise payload
        return payload


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def config(tmp_path):
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["paths"]["data_dir"] = str(tmp_path)
    cfg["paths"]["drop_dir"] = str(tmp_path / "drop")
    cfg["ingest"]["http"]["max_retries"] = 0
    cfg["ingest"]["http"]["backoff_seconds"] = 0
    return build_config(cfg)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def master_key(monkeypatch):
    key = base64.urlsafe_b64encode(b"k" * 32).decode("utf-8")
    monkeypatch.setenv("FEEDSENTRY_MASTER_KEY", key)
    monkeypatch.setenv("FEEDSENTRY_KEY_ID", "v1")
    return key


def add_feed(conn, feed_id="acme", **overrides):
    feed = {
        "id": feed_id,
        "name": feed_id.title(),
        "format_kind": "CSV",
        "transport": "HTTP",
        "locator": f"https://feeds.example.com/{feed_id}.csv",
        "schedule_interval_seconds": 86400,
    }
    feed.update(overrides)
    upsert_feed(conn, feed)
    return feed_id
