import sqlite3

from feedsentry.migrations import apply_migrations, get_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))

    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    }
    assert {
        "feed_sources",
        "feed_runs",
        "indexable_records",
        "quarantined_records",
        "alert_targets",
        "jobs",
        "leases",
    } <= tables
    feed_columns = {row[1] for row in conn.execute("PRAGMA table_info(feed_sources)").fetchall()}
    run_columns = {row[1] for row in conn.execute("PRAGMA table_info(feed_runs)").fetchall()}
    assert "manual_run_pending" in feed_columns
    assert {"active_before", "would_expire_count", "expiry_blocked_reason"} <= run_columns
    conn.close()
