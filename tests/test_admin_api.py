import copy

from fastapi.testclient import TestClient

from feedsentry.admin import app
from feedsentry.config import DEFAULT_CONFIG, get_state_db_path
from feedsentry.storage import init_db, update_feed_health, upsert_quarantined_record

HEADERS = {"X-Admin-Token": "secret"}


def _client(tmp_path, monkeypatch, token="secret"):
    monkeypatch.setenv("FS_DATA_DIR", str(tmp_path))
    if token:
        monkeypatch.setenv("FS_ADMIN_TOKEN", token)
    else:
        monkeypatch.delenv("FS_ADMIN_TOKEN", raising=False)
    return TestClient(app)


def _create_feed(client, feed_id="acme"):
    response = client.post(
        "/feeds",
        headers=HEADERS,
        json={
            "id": feed_id,
            "name": "Acme",
            "locator": "https://feeds.example.com/acme.csv",
            "format_kind": "CSV",
            "schedule_interval_minutes": 60,
        },
    )
    assert response.status_code == 200
    return response.json()


def _quarantine(feed_id="acme", match_key="lamp"):
    conn = init_db(get_state_db_path())
    record_id = upsert_quarantined_record(
        conn,
        feed_id,
        match_key,
        None,
        {"title": "Lamp", "price": "15", "gtin": "N/A"},
        {"title": "Lamp"},
        [{"field": "identifier", "code": "INVALID_IDENTIFIER", "message": "bad"}],
    )
    conn.close()
    return record_id


def test_health_and_root(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    assert client.get("/").json() == {"service": "FeedSentry Admin API"}
    body = client.get("/health").json()
    assert body["ok"] is True
    assert body["jobs"] == {}


def test_mutations_require_token(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    response = client.post("/feeds", json={"name": "Acme", "locator": "x"})
    assert response.status_code == 401
    assert client.get("/admin/config/runtime").status_code == 401

    client.cookies.set("fs_admin_token", "secret")
    assert client.get("/admin/config/runtime").status_code == 200


def test_feed_crud_and_manual_run(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    created = _create_feed(client)
    assert created["schedule_interval_minutes"] == 60
    assert created["has_password"] is False

    listing = client.get("/feeds").json()
    assert [feed["id"] for feed in listing] == ["acme"]
    assert listing[0]["active_records"] == 0

    patched = client.patch("/feeds/acme", headers=HEADERS, json={"name": "Acme Outlet"})
    assert patched.status_code == 200
    assert patched.json()["name"] == "Acme Outlet"
    assert patched.json()["format_kind"] == "CSV"

    first = client.post("/feeds/acme/run", headers=HEADERS).json()
    second = client.post("/feeds/acme/run", headers=HEADERS).json()
    assert first["created"] is True
    assert second == {"job_id": first["job_id"], "created": False}
    job = client.get(f"/jobs/{first['job_id']}").json()
    assert job["priority"] == 10
    assert job["payload"] == {"feed_id": "acme", "trigger": "manual"}

    assert client.post("/feeds/acme/disable", headers=HEADERS).json()["status"] == "DISABLED"
    assert client.post("/feeds/acme/enable", headers=HEADERS).json()["status"] == "ENABLED"


def test_feed_errors(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    _create_feed(client)
    assert client.get("/feeds/missing").status_code == 404
    assert client.post("/feeds/missing/run", headers=HEADERS).status_code == 404
    assert client.post("/feeds/missing/enable", headers=HEADERS).status_code == 404
    assert client.put("/feeds/missing", headers=HEADERS, json={"name": "x"}).status_code == 404
    duplicate = client.post("/feeds", headers=HEADERS, json={"id": "acme", "name": "A", "locator": "x"})
    assert duplicate.status_code == 400
    bad = client.put("/feeds/acme", headers=HEADERS, json={"transport": "FTP"})
    assert bad.status_code == 400


def test_reset_feed_hash(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    _create_feed(client)
    conn = init_db(get_state_db_path())
    update_feed_health(
        conn, "acme", health_status="HEALTHY", completed_at="2024-03-01T00:00:00+00:00",
        content_hash="abc123", succeeded=True,
    )
    conn.close()
    assert client.get("/feeds/acme").json()["has_content_hash"] is True

    assert client.post("/feeds/acme/reset-hash").status_code == 401
    response = client.post("/feeds/acme/reset-hash", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["has_content_hash"] is False
    assert client.post("/feeds/missing/reset-hash", headers=HEADERS).status_code == 404


def test_runtime_config_roundtrip(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    cfg = client.get("/admin/config/runtime", headers=HEADERS).json()["config"]
    assert cfg == DEFAULT_CONFIG

    updated = copy.deepcopy(cfg)
    updated["alerts"]["cooldown_seconds"] = 60
    response = client.put("/admin/config/runtime", headers=HEADERS, json={"config": updated})
    assert response.status_code == 200
    cfg = client.get("/admin/config/runtime", headers=HEADERS).json()["config"]
    assert cfg["alerts"]["cooldown_seconds"] == 60

    updated["ingest"]["thresholds"]["reject_warn_ratio"] = 2
    response = client.put("/admin/config/runtime", headers=HEADERS, json={"config": updated})
    assert response.status_code == 400


def test_quarantine_dismiss_flow(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    _create_feed(client)
    record_id = _quarantine()

    listing = client.get("/quarantine", params={"feed_id": "acme"}).json()
    assert [item["id"] for item in listing] == [record_id]

    short = client.post(f"/quarantine/{record_id}/dismiss", headers=HEADERS, json={"note": "no"})
    assert short.status_code == 400
    assert short.json()["detail"]["error"] == "VALIDATION_ERROR"

    ok = client.post(
        f"/quarantine/{record_id}/dismiss",
        headers=HEADERS,
        json={"note": "not sold here", "actor": "ops"},
    )
    assert ok.status_code == 200
    assert ok.json() == {"record_id": record_id, "status": "DISMISSED", "already_dismissed": False}

    again = client.post(
        f"/quarantine/{record_id}/dismiss", headers=HEADERS, json={"note": "not sold here"}
    )
    assert again.json()["already_dismissed"] is True

    conflict = client.post(f"/quarantine/{record_id}/reprocess", headers=HEADERS)
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["status"] == "DISMISSED"

    detail = client.get(f"/quarantine/{record_id}").json()
    assert detail["status"] == "DISMISSED"
    assert [entry["action"] for entry in detail["audit"]] == ["DISMISS"]
    assert client.get("/quarantine/qr_missing").status_code == 404
    missing = client.post("/quarantine/qr_missing/dismiss", headers=HEADERS, json={"note": "gone now"})
    assert missing.status_code == 404


def test_quarantine_bulk_operations(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    _create_feed(client)
    first = _quarantine(match_key="a")
    second = _quarantine(match_key="b")

    reprocess = client.post(
        "/quarantine/bulk-reprocess", headers=HEADERS, json={"ids": [first]}
    ).json()["results"]
    assert reprocess[first]["enqueued"] is True

    short = client.post(
        "/quarantine/bulk-dismiss", headers=HEADERS, json={"ids": [first], "note": "short"}
    )
    assert short.status_code == 400

    results = client.post(
        "/quarantine/bulk-dismiss",
        headers=HEADERS,
        json={"ids": [first, second, "qr_missing"], "note": "discontinued line"},
    ).json()["results"]
    assert results == {first: "dismissed", second: "dismissed", "qr_missing": "missing"}

    empty = client.post("/quarantine/bulk-reprocess", headers=HEADERS, json={"ids": []})
    assert empty.status_code == 400


def test_jobs_and_subscriptions(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch)
    enqueued = client.post(
        "/jobs/enqueue",
        headers=HEADERS,
        json={"job_type": "prune_jobs", "job_key": "prune:manual"},
    ).json()
    assert enqueued["created"] is True
    jobs = client.get("/jobs").json()
    assert [job["id"] for job in jobs] == [enqueued["job_id"]]
    assert client.get("/jobs/missing").status_code == 404
    assert client.get("/health").json()["jobs"] == {"queued": 1}

    created = client.post(
        "/subscriptions",
        headers=HEADERS,
        json={"identifier": "012345678905", "channel": "email:a@example.com", "target_price": 9.5},
    ).json()
    assert created["is_active"] is True
    fetched = client.get(f"/subscriptions/{created['id']}").json()
    assert fetched == created
    blank = client.post("/subscriptions", headers=HEADERS, json={"identifier": " ", "channel": "x"})
    assert blank.status_code == 400
    assert client.get("/subscriptions/missing").status_code == 404


def test_open_mode_without_token(tmp_path, monkeypatch):
    client = _client(tmp_path, monkeypatch, token=None)
    response = client.post("/feeds", json={"name": "Open Feed", "locator": "https://x.example.com/f"})
    assert response.status_code == 200
    assert response.json()["id"] == "open-feed"
