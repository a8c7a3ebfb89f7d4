from __future__ import annotations

import logging

from .migrations import get_migrations
from .utils import utc_now_iso

_MIGRATION_LOCK_KEY = 727_011_001


def apply_migrations_pg(conn) -> None:
    """Apply the shared migrations through a postgres DBConn."""
    logger = logging.getLogger("feedsentry.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    # Serialize concurrent bootstraps from several worker processes.
    conn.execute("SELECT pg_advisory_xact_lock(?)", (_MIGRATION_LOCK_KEY,))
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in get_migrations():
            if version in applied:
                continue
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s backend=postgres", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
