from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable

from .utils import utc_now_iso

Migration = Callable[[Any], None]

# Statements are written to run unchanged on SQLite and PostgreSQL.
INITIAL_SCHEMA: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_sources (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        format_kind TEXT NOT NULL DEFAULT 'GENERIC',
        transport TEXT NOT NULL DEFAULT 'HTTP',
        locator TEXT NOT NULL,
        username TEXT NULL,
        password_enc TEXT NULL,
        password_key_id TEXT NULL,
        schedule_interval_seconds INTEGER NOT NULL DEFAULT 86400,
        status TEXT NOT NULL DEFAULT 'ENABLED',
        health_status TEXT NOT NULL DEFAULT 'PENDING',
        consecutive_failure_count INTEGER NOT NULL DEFAULT 0,
        content_hash TEXT NULL,
        eligible INTEGER NOT NULL DEFAULT 1,
        last_run_at TEXT NULL,
        last_success_at TEXT NULL,
        last_failure_at TEXT NULL,
        last_error TEXT NULL,
        last_error_code TEXT NULL,
        next_run_at TEXT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS feed_runs (
        id TEXT PRIMARY KEY,
        feed_id TEXT NOT NULL REFERENCES feed_sources(id),
        trigger TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT NULL,
        row_count INTEGER NOT NULL DEFAULT 0,
        indexed_count INTEGER NOT NULL DEFAULT 0,
        quarantined_count INTEGER NOT NULL DEFAULT 0,
        rejected_count INTEGER NOT NULL DEFAULT 0,
        coercion_count INTEGER NOT NULL DEFAULT 0,
        primary_error_code TEXT NULL,
        error_codes_json TEXT NULL,
        errors_json TEXT NULL,
        skip_reason TEXT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_feed_runs_feed ON feed_runs(feed_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS indexable_records (
        record_key TEXT NOT NULL,
        feed_id TEXT NOT NULL REFERENCES feed_sources(id),
        title TEXT NOT NULL,
        identifier TEXT NOT NULL,
        sku TEXT NULL,
        price DOUBLE PRECISION NOT NULL,
        in_stock INTEGER NULL,
        url TEXT NULL,
        brand TEXT NULL,
        raw_json TEXT NULL,
        coercions_json TEXT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_by_run_id TEXT NULL,
        last_updated_by_run_id TEXT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY(feed_id, record_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_indexable_feed ON indexable_records(feed_id, is_active)",
    "CREATE INDEX IF NOT EXISTS idx_indexable_identifier ON indexable_records(identifier)",
    """
    CREATE TABLE IF NOT EXISTS price_observations (
        id TEXT PRIMARY KEY,
        feed_id TEXT NOT NULL,
        identifier TEXT NOT NULL,
        price DOUBLE PRECISION NOT NULL,
        in_stock INTEGER NULL,
        run_id TEXT NULL,
        observed_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_price_obs_identifier
        ON price_observations(feed_id, identifier, observed_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS quarantined_records (
        id TEXT PRIMARY KEY,
        feed_id TEXT NOT NULL REFERENCES feed_sources(id),
        match_key TEXT NOT NULL,
        run_id TEXT NULL,
        raw_json TEXT NULL,
        parsed_json TEXT NULL,
        blocking_errors_json TEXT NULL,
        status TEXT NOT NULL DEFAULT 'QUARANTINED',
        dismiss_note TEXT NULL,
        dismissed_by TEXT NULL,
        dismissed_at TEXT NULL,
        resolved_at TEXT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(feed_id, match_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_quarantine_status ON quarantined_records(status, feed_id)",
    """
    CREATE TABLE IF NOT EXISTS quarantine_audit (
        id TEXT PRIMARY KEY,
        record_id TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT NULL,
        note TEXT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_subscriptions (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL,
        channel TEXT NOT NULL,
        target_price DOUBLE PRECISION NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_identifier ON alert_subscriptions(identifier)",
    """
    CREATE TABLE IF NOT EXISTS alert_targets (
        subscription_id TEXT NOT NULL,
        rule_type TEXT NOT NULL,
        last_notified_at TEXT NULL,
        claim_key TEXT NULL,
        claimed_at TEXT NULL,
        PRIMARY KEY(subscription_id, rule_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        job_type TEXT NOT NULL,
        job_key TEXT NULL UNIQUE,
        status TEXT NOT NULL,
        payload_json TEXT NULL,
        result_json TEXT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        requested_at TEXT NOT NULL,
        available_at TEXT NOT NULL,
        started_at TEXT NULL,
        finished_at TEXT NULL,
        locked_by TEXT NULL,
        locked_at TEXT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        run_id TEXT NULL,
        error TEXT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, available_at)",
    """
    CREATE TABLE IF NOT EXISTS leases (
        name TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS health_alerts (
        id TEXT PRIMARY KEY,
        feed_id TEXT NULL,
        alert_type TEXT NOT NULL,
        message TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("feedsentry.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: Any) -> None:
    for statement in INITIAL_SCHEMA:
        conn.execute(statement)


def _migration_jobs_run_index(conn: Any) -> None:
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id)"
    )


def _migration_manual_pending_and_expiry(conn: Any) -> None:
    additions = {
        "feed_sources": {
            "manual_run_pending": "INTEGER NOT NULL DEFAULT 0",
        },
        "feed_runs": {
            "active_before": "INTEGER NOT NULL DEFAULT 0",
            "would_expire_count": "INTEGER NOT NULL DEFAULT 0",
            "expiry_blocked_reason": "TEXT NULL",
        },
    }
    for table, columns in additions.items():
        existing = _table_columns(conn, table)
        for column, definition in columns.items():
            if column in existing:
                continue
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _table_columns(conn: Any, table: str) -> set[str]:
    if getattr(conn, "backend", "sqlite") == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_run_index", _migration_jobs_run_index),
        ("003_manual_pending_and_expiry", _migration_manual_pending_and_expiry),
    ]
