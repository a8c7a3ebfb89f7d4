import json

from feedsentry import cli
from feedsentry.storage import (
    get_feed,
    init_db,
    list_jobs,
    list_runs,
    upsert_quarantined_record,
)


def _write_feeds(tmp_path, drop):
    path = tmp_path / "feeds.yml"
    path.write_text(
        "feeds:\n"
        "  - id: acme\n"
        "    name: Acme\n"
        f"    locator: {drop}\n"
        "    transport: FILE\n"
        "    format_kind: CSV\n"
        "    schedule_interval_minutes: 60\n",
        encoding="utf-8",
    )
    return path


def _setup(tmp_path):
    drop = tmp_path / "acme.csv"
    drop.write_text("title,price,gtin\nWidget,10.00,012345678905\n", encoding="utf-8")
    db = str(tmp_path / "state.sqlite3")
    assert cli.main(["--db", db, "feeds", "import", str(_write_feeds(tmp_path, drop))]) == 0
    return db


def test_feeds_import_and_list(tmp_path):
    db = _setup(tmp_path)
    conn = init_db(db)
    feed = get_feed(conn, "acme")
    assert feed.transport == "FILE"
    assert feed.schedule_interval_seconds == 3600
    conn.close()

    assert cli.main(["--db", db, "feeds", "list"]) == 0
    assert cli.main(["--db", db, "feeds", "list", "--status", "DRAFT"]) == 1
    assert cli.main(["--db", db, "feeds", "import", str(tmp_path / "missing.yml")]) == 1


def test_run_feed_inline(tmp_path):
    db = _setup(tmp_path)

    assert cli.main(["--db", db, "run-feed", "acme"]) == 0
    assert cli.main(["--db", db, "run-feed", "missing"]) == 1

    conn = init_db(db)
    runs = list_runs(conn, "acme")
    assert len(runs) == 1
    assert runs[0].trigger == "manual"
    assert runs[0].indexed_count == 1
    conn.close()


def test_run_feed_enqueue_and_tick(tmp_path):
    db = _setup(tmp_path)

    assert cli.main(["--db", db, "run-feed", "acme", "--enqueue"]) == 0
    assert cli.main(["--db", db, "schedule", "tick"]) == 0

    conn = init_db(db)
    jobs = list_jobs(conn)
    triggers = sorted(job.payload.get("trigger", "") for job in jobs if job.job_type == "ingest_feed")
    assert triggers == ["manual", "scheduled"]
    assert any(job.job_type == "prune_jobs" for job in jobs)
    conn.close()


def test_enable_disable(tmp_path):
    db = _setup(tmp_path)
    assert cli.main(["--db", db, "feeds", "disable", "acme"]) == 0
    conn = init_db(db)
    assert get_feed(conn, "acme").status == "DISABLED"
    assert cli.main(["--db", db, "feeds", "enable", "acme"]) == 0
    assert get_feed(conn, "acme").status == "ENABLED"
    assert cli.main(["--db", db, "feeds", "enable", "missing"]) == 1
    conn.close()


def test_reset_hash_reprocesses_unchanged_feed(tmp_path):
    db = _setup(tmp_path)
    assert cli.main(["--db", db, "run-feed", "acme"]) == 0
    conn = init_db(db)
    assert get_feed(conn, "acme").content_hash is not None

    assert cli.main(["--db", db, "feeds", "reset-hash", "acme"]) == 0
    assert get_feed(conn, "acme").content_hash is None
    assert cli.main(["--db", db, "run-feed", "acme"]) == 0
    runs = list_runs(conn, "acme")
    assert [run.skip_reason for run in runs] == [None, None]
    assert cli.main(["--db", db, "feeds", "reset-hash", "missing"]) == 1
    conn.close()


def test_quarantine_dismiss(tmp_path):
    db = _setup(tmp_path)
    conn = init_db(db)
    record_id = upsert_quarantined_record(
        conn, "acme", "lamp", None, {"title": "Lamp"}, {"title": "Lamp"}, []
    )

    assert cli.main(["--db", db, "quarantine", "list"]) == 0
    assert cli.main(["--db", db, "quarantine", "dismiss", record_id, "--note", "x"]) == 1
    assert cli.main(["--db", db, "quarantine", "dismiss", record_id, "--note", "not ours"]) == 0
    assert cli.main(["--db", db, "quarantine", "dismiss", "qr_missing", "--note", "not ours"]) == 1
    row = conn.execute(
        "SELECT status, dismissed_by FROM quarantined_records WHERE id = ?", (record_id,)
    ).fetchone()
    assert tuple(row) == ("DISMISSED", "cli")
    conn.close()


def test_jobs_commands(tmp_path):
    db = str(tmp_path / "state.sqlite3")
    assert cli.main(["--db", db, "db", "migrate"]) == 0
    payload = json.dumps({"record_id": "qr_1"})
    assert cli.main(
        ["--db", db, "jobs", "enqueue", "quarantine_reprocess", "--payload", payload, "--job-key", "k1"]
    ) == 0
    assert cli.main(["--db", db, "jobs", "enqueue", "prune_jobs", "--payload", "{bad"]) == 1
    assert cli.main(["--db", db, "jobs", "list", "--status", "queued"]) == 0

    conn = init_db(db)
    jobs = list_jobs(conn)
    assert [(job.job_type, job.job_key, job.payload) for job in jobs] == [
        ("quarantine_reprocess", "k1", {"record_id": "qr_1"})
    ]
    conn.close()


def test_serve_invokes_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))

    assert cli.main(["serve", "--port", "9000"]) == 0
    assert calls == [("feedsentry.admin:app", {"host": "0.0.0.0", "port": 9000, "log_level": "info"})]
