from __future__ import annotations

import hashlib
import json
import struct
import uuid
from typing import Any, Iterable

from .db import DBConn, connect_db
from .models import (
    DISMISSED,
    FEED_DISABLED,
    FEED_ENABLED,
    QUARANTINED,
    RESOLVED,
    RUN_RUNNING,
    AlertSubscription,
    AlertTarget,
    EnqueueResult,
    FeedRun,
    FeedSource,
    Job,
    ProductRecord,
    QuarantinedRecord,
)
from .utils import json_dumps, json_loads_or, utc_now_iso, utc_now_iso_offset


def init_db(path: str) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# --- feeds -----------------------------------------------------------------

_FEED_COLUMNS = """
    id, name, format_kind, transport, locator, username, password_enc, password_key_id,
    schedule_interval_seconds, status, health_status, consecutive_failure_count,
    content_hash, eligible, last_run_at, last_success_at, last_failure_at, last_error,
    last_error_code, next_run_at, manual_run_pending
"""


def upsert_feed(conn: Any, feed: dict[str, object]) -> None:
    """Insert a feed or update its configuration; health and counters are left alone."""
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO feed_sources
            (id, name, format_kind, transport, locator, username, password_enc,
             password_key_id, schedule_interval_seconds, status, eligible,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            format_kind = excluded.format_kind,
            transport = excluded.transport,
            locator = excluded.locator,
            username = excluded.username,
            password_enc = excluded.password_enc,
            password_key_id = excluded.password_key_id,
            schedule_interval_seconds = excluded.schedule_interval_seconds,
            status = excluded.status,
            eligible = excluded.eligible,
            updated_at = excluded.updated_at
        """,
        (
            feed["id"],
            feed.get("name") or feed["id"],
            feed.get("format_kind") or "GENERIC",
            feed.get("transport") or "HTTP",
            feed["locator"],
            feed.get("username"),
            feed.get("password_enc"),
            feed.get("password_key_id"),
            int(feed.get("schedule_interval_seconds") or 86400),
            feed.get("status") or FEED_ENABLED,
            1 if feed.get("eligible", True) else 0,
            now,
            now,
        ),
    )
    conn.commit()


def get_feed(conn: Any, feed_id: str) -> FeedSource | None:
    cursor = conn.execute(
        f"SELECT {_FEED_COLUMNS} FROM feed_sources WHERE id = ?",
        (feed_id,),
    )
    row = cursor.fetchone()
    return _row_to_feed(row) if row else None


def list_feeds(conn: Any, status: str | None = None) -> list[FeedSource]:
    if status:
        cursor = conn.execute(
            f"SELECT {_FEED_COLUMNS} FROM feed_sources WHERE status = ? ORDER BY id",
            (status,),
        )
    else:
        cursor = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feed_sources ORDER BY id")
    return [_row_to_feed(row) for row in cursor.fetchall()]


def list_due_feeds(conn: Any, now_iso: str) -> list[FeedSource]:
    cursor = conn.execute(
        f"""
        SELECT {_FEED_COLUMNS}
        FROM feed_sources
        WHERE status = ? AND (next_run_at IS NULL OR next_run_at <= ?)
        ORDER BY id
        """,
        (FEED_ENABLED, now_iso),
    )
    return [_row_to_feed(row) for row in cursor.fetchall()]


def set_feed_status(conn: Any, feed_id: str, status: str) -> bool:
    cursor = conn.execute(
        "UPDATE feed_sources SET status = ?, updated_at = ? WHERE id = ?",
        (status, utc_now_iso(), feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def enable_feed(conn: Any, feed_id: str, now_iso: str | None = None) -> bool:
    now = now_iso or utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE feed_sources
        SET status = ?, consecutive_failure_count = 0, next_run_at = ?, updated_at = ?
        WHERE id = ?
        """,
        (FEED_ENABLED, now, now, feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def reset_feed_content_hash(conn: Any, feed_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE feed_sources SET content_hash = NULL, updated_at = ? WHERE id = ?",
        (utc_now_iso(), feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def touch_feed_run(conn: Any, feed_id: str, last_run_at: str, next_run_at: str | None = None) -> None:
    conn.execute(
        """
        UPDATE feed_sources
        SET last_run_at = ?, next_run_at = COALESCE(?, next_run_at), updated_at = ?
        WHERE id = ?
        """,
        (last_run_at, next_run_at, last_run_at, feed_id),
    )
    conn.commit()


def set_manual_run_pending(conn: Any, feed_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE feed_sources SET manual_run_pending = 1, updated_at = ? WHERE id = ?",
        (utc_now_iso(), feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def take_manual_run_pending(conn: Any, feed_id: str) -> bool:
    """Clear the pending flag; True only for the caller that actually cleared it."""
    cursor = conn.execute(
        """
        UPDATE feed_sources
        SET manual_run_pending = 0, updated_at = ?
        WHERE id = ? AND manual_run_pending = 1
        """,
        (utc_now_iso(), feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def update_feed_health(
    conn: Any,
    feed_id: str,
    *,
    health_status: str | None,
    completed_at: str,
    content_hash: str | None = None,
    succeeded: bool | None = None,
    last_error: str | None = None,
    last_error_code: str | None = None,
) -> None:
    """Persist the health fields of one finished run.

    ``health_status`` and ``content_hash`` keep their stored values when None.
    ``succeeded`` picks which of last_success_at/last_failure_at moves; None moves neither.
    """
    conn.execute(
        """
        UPDATE feed_sources
        SET health_status = COALESCE(?, health_status),
            content_hash = COALESCE(?, content_hash),
            last_run_at = ?,
            last_success_at = COALESCE(?, last_success_at),
            last_failure_at = COALESCE(?, last_failure_at),
            last_error = ?,
            last_error_code = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (
            health_status,
            content_hash,
            completed_at,
            completed_at if succeeded is True else None,
            completed_at if succeeded is False else None,
            last_error,
            last_error_code,
            completed_at,
            feed_id,
        ),
    )
    conn.commit()


def swap_failure_count(
    conn: Any,
    feed_id: str,
    expected: int,
    new_count: int,
    next_run_at: str | None,
    disable: bool,
) -> bool:
    """Compare-and-set the failure counter together with the schedule fields."""
    cursor = conn.execute(
        """
        UPDATE feed_sources
        SET consecutive_failure_count = ?,
            next_run_at = ?,
            status = CASE WHEN ? = 1 THEN ? ELSE status END,
            updated_at = ?
        WHERE id = ? AND consecutive_failure_count = ?
        """,
        (
            new_count,
            next_run_at,
            1 if disable else 0,
            FEED_DISABLED,
            utc_now_iso(),
            feed_id,
            expected,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


# --- runs ------------------------------------------------------------------

_RUN_COLUMNS = """
    id, feed_id, trigger, status, started_at, completed_at, row_count, indexed_count,
    quarantined_count, rejected_count, coercion_count, primary_error_code,
    error_codes_json, errors_json, skip_reason, active_before, would_expire_count,
    expiry_blocked_reason
"""


def create_run(conn: Any, feed_id: str, trigger: str, started_at: str | None = None) -> str:
    run_id = _new_id("run")
    conn.execute(
        """
        INSERT INTO feed_runs (id, feed_id, trigger, status, started_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (run_id, feed_id, trigger, RUN_RUNNING, started_at or utc_now_iso()),
    )
    conn.commit()
    return run_id


def get_run(conn: Any, run_id: str) -> FeedRun | None:
    cursor = conn.execute(f"SELECT {_RUN_COLUMNS} FROM feed_runs WHERE id = ?", (run_id,))
    row = cursor.fetchone()
    return _row_to_run(row) if row else None


def list_runs(conn: Any, feed_id: str | None = None, limit: int = 50) -> list[FeedRun]:
    if feed_id:
        cursor = conn.execute(
            f"""
            SELECT {_RUN_COLUMNS} FROM feed_runs
            WHERE feed_id = ?
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (feed_id, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM feed_runs ORDER BY started_at DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_run(row) for row in cursor.fetchall()]


def finalize_run(
    conn: Any,
    run_id: str,
    status: str,
    *,
    completed_at: str,
    row_count: int = 0,
    indexed_count: int = 0,
    quarantined_count: int = 0,
    rejected_count: int = 0,
    coercion_count: int = 0,
    primary_error_code: str | None = None,
    error_codes: dict[str, int] | None = None,
    errors: list[dict[str, object]] | None = None,
    skip_reason: str | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE feed_runs
        SET status = ?, completed_at = ?, row_count = ?, indexed_count = ?,
            quarantined_count = ?, rejected_count = ?, coercion_count = ?,
            primary_error_code = ?, error_codes_json = ?, errors_json = ?, skip_reason = ?
        WHERE id = ? AND status IN ('PENDING', 'RUNNING')
        """,
        (
            status,
            completed_at,
            row_count,
            indexed_count,
            quarantined_count,
            rejected_count,
            coercion_count,
            primary_error_code,
            json_dumps(error_codes) if error_codes else None,
            json_dumps(errors) if errors else None,
            skip_reason,
            run_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_expiry_check(
    conn: Any,
    run_id: str,
    active_before: int,
    would_expire_count: int,
    blocked_reason: str | None,
) -> None:
    conn.execute(
        """
        UPDATE feed_runs
        SET active_before = ?, would_expire_count = ?, expiry_blocked_reason = ?
        WHERE id = ?
        """,
        (active_before, would_expire_count, blocked_reason, run_id),
    )
    conn.commit()


# --- indexable records -----------------------------------------------------


def upsert_indexable_record(
    conn: Any,
    feed_id: str,
    run_id: str | None,
    record_key: str,
    record: ProductRecord,
    coercions: list[dict[str, object]],
) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO indexable_records
            (record_key, feed_id, title, identifier, sku, price, in_stock, url, brand,
             raw_json, coercions_json, is_active, created_by_run_id,
             last_updated_by_run_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
        ON CONFLICT(feed_id, record_key) DO UPDATE SET
            in_stock = excluded.in_stock,
            url = excluded.url,
            brand = excluded.brand,
            raw_json = excluded.raw_json,
            coercions_json = excluded.coercions_json,
            is_active = 1,
            last_updated_by_run_id = excluded.last_updated_by_run_id,
            updated_at = excluded.updated_at
        """,
        (
            record_key,
            feed_id,
            record.title,
            record.identifier,
            record.sku,
            record.price,
            _bool_to_int(record.in_stock),
            record.url,
            record.brand,
            json_dumps(record.raw),
            json_dumps(coercions) if coercions else None,
            run_id,
            run_id,
            now,
            now,
        ),
    )
    conn.commit()


def deactivate_untouched_records(conn: Any, feed_id: str, run_id: str) -> int:
    cursor = conn.execute(
        """
        UPDATE indexable_records
        SET is_active = 0, updated_at = ?
        WHERE feed_id = ? AND is_active = 1
          AND (last_updated_by_run_id IS NULL OR last_updated_by_run_id <> ?)
        """,
        (utc_now_iso(), feed_id, run_id),
    )
    conn.commit()
    return cursor.rowcount


def count_expiry_candidates(conn: Any, feed_id: str, run_id: str) -> tuple[int, int]:
    """Return (active before this run, active records this run would deactivate)."""
    row = conn.execute(
        """
        SELECT
            SUM(CASE WHEN last_updated_by_run_id IS NULL OR last_updated_by_run_id <> ?
                     THEN 1 ELSE 0 END),
            SUM(CASE WHEN last_updated_by_run_id = ?
                      AND (created_by_run_id IS NULL OR created_by_run_id <> ?)
                     THEN 1 ELSE 0 END)
        FROM indexable_records
        WHERE feed_id = ? AND is_active = 1
        """,
        (run_id, run_id, run_id, feed_id),
    ).fetchone()
    would_expire = int(row[0] or 0) if row else 0
    seen = int(row[1] or 0) if row else 0
    return would_expire + seen, would_expire


def get_indexable_record(conn: Any, feed_id: str, record_key: str) -> dict[str, object] | None:
    cursor = conn.execute(
        """
        SELECT record_key, feed_id, title, identifier, sku, price, in_stock, url, is_active,
               created_by_run_id, last_updated_by_run_id
        FROM indexable_records
        WHERE feed_id = ? AND record_key = ?
        """,
        (feed_id, record_key),
    )
    row = cursor.fetchone()
    if not row:
        return None
    (
        key,
        owner_feed_id,
        title,
        identifier,
        sku,
        price,
        in_stock,
        url,
        is_active,
        created_by_run_id,
        last_updated_by_run_id,
    ) = row
    return {
        "record_key": key,
        "feed_id": owner_feed_id,
        "title": title,
        "identifier": identifier,
        "sku": sku,
        "price": float(price),
        "in_stock": _int_to_bool(in_stock),
        "url": url,
        "is_active": bool(is_active),
        "created_by_run_id": created_by_run_id,
        "last_updated_by_run_id": last_updated_by_run_id,
    }


def count_active_records(conn: Any, feed_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM indexable_records WHERE feed_id = ? AND is_active = 1",
        (feed_id,),
    ).fetchone()
    return int(row[0]) if row else 0


def record_price_observation(
    conn: Any,
    feed_id: str,
    identifier: str,
    price: float,
    in_stock: bool | None,
    run_id: str | None,
) -> bool:
    """Append an observation when price or stock moved since the last one."""
    last = list_price_observations(conn, feed_id, identifier, limit=1)
    if last and last[0]["price"] == float(price) and last[0]["in_stock"] == in_stock:
        return False
    conn.execute(
        """
        INSERT INTO price_observations
            (id, feed_id, identifier, price, in_stock, run_id, observed_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            _new_id("obs"),
            feed_id,
            identifier,
            float(price),
            _bool_to_int(in_stock),
            run_id,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return True


def list_price_observations(
    conn: Any, feed_id: str, identifier: str, limit: int = 2
) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT price, in_stock, run_id, observed_at
        FROM price_observations
        WHERE feed_id = ? AND identifier = ?
        ORDER BY observed_at DESC
        LIMIT ?
        """,
        (feed_id, identifier, limit),
    )
    return [
        {
            "price": float(price),
            "in_stock": _int_to_bool(in_stock),
            "run_id": run_id,
            "observed_at": observed_at,
        }
        for price, in_stock, run_id, observed_at in cursor.fetchall()
    ]


# --- quarantine ------------------------------------------------------------

_QUARANTINE_COLUMNS = """
    id, feed_id, match_key, run_id, raw_json, parsed_json, blocking_errors_json, status,
    dismiss_note, dismissed_by, dismissed_at, resolved_at, created_at, updated_at
"""


def upsert_quarantined_record(
    conn: Any,
    feed_id: str,
    match_key: str,
    run_id: str | None,
    raw: dict[str, object],
    parsed: dict[str, object],
    blocking_errors: list[dict[str, object]],
) -> str:
    """Insert or refresh a quarantined row. The status column is never updated here."""
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO quarantined_records
            (id, feed_id, match_key, run_id, raw_json, parsed_json, blocking_errors_json,
             status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(feed_id, match_key) DO UPDATE SET
            run_id = excluded.run_id,
            raw_json = excluded.raw_json,
            parsed_json = excluded.parsed_json,
            blocking_errors_json = excluded.blocking_errors_json,
            updated_at = excluded.updated_at
        """,
        (
            _new_id("qr"),
            feed_id,
            match_key,
            run_id,
            json_dumps(raw),
            json_dumps(parsed),
            json_dumps(blocking_errors),
            QUARANTINED,
            now,
            now,
        ),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM quarantined_records WHERE feed_id = ? AND match_key = ?",
        (feed_id, match_key),
    ).fetchone()
    return str(row[0])


def get_quarantined_record(conn: Any, record_id: str) -> QuarantinedRecord | None:
    cursor = conn.execute(
        f"SELECT {_QUARANTINE_COLUMNS} FROM quarantined_records WHERE id = ?",
        (record_id,),
    )
    row = cursor.fetchone()
    return _row_to_quarantined(row) if row else None


def get_quarantine_status(conn: Any, record_id: str) -> str | None:
    row = conn.execute(
        "SELECT status FROM quarantined_records WHERE id = ?",
        (record_id,),
    ).fetchone()
    return str(row[0]) if row else None


def list_quarantined_records(
    conn: Any,
    status: str | None = QUARANTINED,
    feed_id: str | None = None,
    limit: int = 100,
) -> list[QuarantinedRecord]:
    clauses: list[str] = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if feed_id:
        clauses.append("feed_id = ?")
        params.append(feed_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_QUARANTINE_COLUMNS} FROM quarantined_records
        {where}
        ORDER BY updated_at DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_quarantined(row) for row in cursor.fetchall()]


def mark_quarantine_dismissed(conn: Any, record_id: str, note: str, actor: str | None) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE quarantined_records
        SET status = ?, dismiss_note = ?, dismissed_by = ?, dismissed_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (DISMISSED, note, actor, now, now, record_id, QUARANTINED),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_quarantine_resolved(conn: Any, record_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE quarantined_records
        SET status = ?, resolved_at = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (RESOLVED, now, now, record_id, QUARANTINED),
    )
    conn.commit()
    return cursor.rowcount == 1


def resolve_quarantined_by_match_key(conn: Any, feed_id: str, match_key: str) -> str | None:
    row = conn.execute(
        "SELECT id FROM quarantined_records WHERE feed_id = ? AND match_key = ? AND status = ?",
        (feed_id, match_key, QUARANTINED),
    ).fetchone()
    if not row:
        return None
    record_id = str(row[0])
    return record_id if mark_quarantine_resolved(conn, record_id) else None


def update_quarantine_errors(
    conn: Any, record_id: str, blocking_errors: list[dict[str, object]]
) -> bool:
    cursor = conn.execute(
        """
        UPDATE quarantined_records
        SET blocking_errors_json = ?, updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (json_dumps(blocking_errors), utc_now_iso(), record_id, QUARANTINED),
    )
    conn.commit()
    return cursor.rowcount == 1


def insert_quarantine_audit(
    conn: Any, record_id: str, action: str, actor: str | None, note: str | None = None
) -> None:
    conn.execute(
        """
        INSERT INTO quarantine_audit (id, record_id, action, actor, note, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (_new_id("qa"), record_id, action, actor, note, utc_now_iso()),
    )
    conn.commit()


def list_quarantine_audit(conn: Any, record_id: str) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT action, actor, note, created_at
        FROM quarantine_audit
        WHERE record_id = ?
        ORDER BY created_at ASC
        """,
        (record_id,),
    )
    return [
        {"action": action, "actor": actor, "note": note, "created_at": created_at}
        for action, actor, note, created_at in cursor.fetchall()
    ]


# --- alerts ----------------------------------------------------------------


def create_subscription(
    conn: Any,
    identifier: str,
    channel: str,
    target_price: float | None = None,
    subscription_id: str | None = None,
) -> str:
    subscription_id = subscription_id or _new_id("sub")
    conn.execute(
        """
        INSERT INTO alert_subscriptions (id, identifier, channel, target_price, is_active, created_at)
        VALUES (?, ?, ?, ?, 1, ?)
        """,
        (subscription_id, identifier, channel, target_price, utc_now_iso()),
    )
    conn.commit()
    return subscription_id


def get_subscription(conn: Any, subscription_id: str) -> AlertSubscription | None:
    row = conn.execute(
        """
        SELECT id, identifier, channel, target_price, is_active
        FROM alert_subscriptions WHERE id = ?
        """,
        (subscription_id,),
    ).fetchone()
    return _row_to_subscription(row) if row else None


def list_active_subscriptions(conn: Any, identifier: str) -> list[AlertSubscription]:
    cursor = conn.execute(
        """
        SELECT id, identifier, channel, target_price, is_active
        FROM alert_subscriptions
        WHERE identifier = ? AND is_active = 1
        ORDER BY created_at
        """,
        (identifier,),
    )
    return [_row_to_subscription(row) for row in cursor.fetchall()]


def ensure_alert_target(conn: Any, subscription_id: str, rule_type: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO alert_targets (subscription_id, rule_type) VALUES (?, ?)",
        (subscription_id, rule_type),
    )
    conn.commit()


def get_alert_target(conn: Any, subscription_id: str, rule_type: str) -> AlertTarget | None:
    row = conn.execute(
        """
        SELECT subscription_id, rule_type, last_notified_at, claim_key, claimed_at
        FROM alert_targets
        WHERE subscription_id = ? AND rule_type = ?
        """,
        (subscription_id, rule_type),
    ).fetchone()
    if not row:
        return None
    return AlertTarget(
        subscription_id=row[0],
        rule_type=row[1],
        last_notified_at=row[2],
        claim_key=row[3],
        claimed_at=row[4],
    )


def try_claim_alert_target(
    conn: Any,
    subscription_id: str,
    rule_type: str,
    claim_key: str,
    now_iso: str,
    cooldown_cutoff: str,
    stale_cutoff: str,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE alert_targets
        SET claim_key = ?, claimed_at = ?
        WHERE subscription_id = ? AND rule_type = ?
          AND (last_notified_at IS NULL OR last_notified_at <= ?)
          AND (claim_key IS NULL OR claimed_at IS NULL OR claimed_at <= ?)
        """,
        (claim_key, now_iso, subscription_id, rule_type, cooldown_cutoff, stale_cutoff),
    )
    conn.commit()
    return cursor.rowcount == 1


def commit_alert_target(
    conn: Any, subscription_id: str, rule_type: str, claim_key: str, now_iso: str
) -> bool:
    cursor = conn.execute(
        """
        UPDATE alert_targets
        SET last_notified_at = ?, claim_key = NULL, claimed_at = NULL
        WHERE subscription_id = ? AND rule_type = ? AND claim_key = ?
        """,
        (now_iso, subscription_id, rule_type, claim_key),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_alert_target(conn: Any, subscription_id: str, rule_type: str, claim_key: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE alert_targets
        SET claim_key = NULL, claimed_at = NULL
        WHERE subscription_id = ? AND rule_type = ? AND claim_key = ?
        """,
        (subscription_id, rule_type, claim_key),
    )
    conn.commit()
    return cursor.rowcount == 1


# --- health alerts ---------------------------------------------------------


def record_health_alert(conn: Any, feed_id: str | None, alert_type: str, message: str) -> None:
    conn.execute(
        """
        INSERT INTO health_alerts (id, feed_id, alert_type, message, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (_new_id("ha"), feed_id, alert_type, message, utc_now_iso()),
    )
    conn.commit()


def list_health_alerts(conn: Any, feed_id: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    if feed_id:
        cursor = conn.execute(
            """
            SELECT feed_id, alert_type, message, created_at FROM health_alerts
            WHERE feed_id = ? ORDER BY created_at DESC LIMIT ?
            """,
            (feed_id, limit),
        )
    else:
        cursor = conn.execute(
            """
            SELECT feed_id, alert_type, message, created_at FROM health_alerts
            ORDER BY created_at DESC LIMIT ?
            """,
            (limit,),
        )
    return [
        {"feed_id": fid, "alert_type": alert_type, "message": message, "created_at": created_at}
        for fid, alert_type, message, created_at in cursor.fetchall()
    ]


# --- jobs ------------------------------------------------------------------

_JOB_COLUMNS = """
    id, job_type, job_key, status, payload_json, result_json, priority, requested_at,
    available_at, started_at, finished_at, locked_by, locked_at, attempts, max_attempts,
    run_id, error
"""


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    job_key: str | None = None,
    priority: int = 0,
    delay_seconds: int = 0,
    max_attempts: int = 3,
) -> EnqueueResult:
    """Insert a queued job; a job_key already present makes this a no-op."""
    job_id = _new_job_id()
    now = utc_now_iso()
    available_at = utc_now_iso_offset(seconds=delay_seconds) if delay_seconds else now
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO jobs
            (id, job_type, job_key, status, payload_json, priority, requested_at,
             available_at, attempts, max_attempts)
        VALUES (?, ?, ?, 'queued', ?, ?, ?, ?, 0, ?)
        """,
        (
            job_id,
            job_type,
            job_key,
            json_dumps(payload) if payload else None,
            priority,
            now,
            available_at,
            max_attempts,
        ),
    )
    conn.commit()
    if cursor.rowcount == 1:
        return EnqueueResult(job_id=job_id, created=True)
    existing = get_job_by_key(conn, job_key) if job_key else None
    return EnqueueResult(job_id=existing.id if existing else job_id, created=False)


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def get_job_by_key(conn: Any, job_key: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_key = ?", (job_key,)
    ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50, status: str | None = None) -> list[Job]:
    if status:
        cursor = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = ? ORDER BY requested_at DESC LIMIT ?",
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY requested_at DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def requeue_stale_jobs(conn: Any, lock_timeout_seconds: int) -> int:
    """Put jobs whose worker went silent back on the queue, keeping their bound run id."""
    cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, locked_by = NULL, locked_at = NULL,
            error = 'stale_lock_attempts_exhausted'
        WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
          AND attempts >= max_attempts
        """,
        (now, cutoff),
    )
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            locked_by = NULL,
            locked_at = NULL,
            started_at = NULL,
            available_at = ?,
            error = 'stale_lock_requeued'
        WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
        """,
        (now, cutoff),
    )
    conn.commit()
    return cursor.rowcount


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    if lock_timeout_seconds is not None:
        requeue_stale_jobs(conn, lock_timeout_seconds)
    params: list[object] = []
    type_clause = ""
    if allowed_types:
        placeholders = ",".join(["?"] * len(allowed_types))
        type_clause = f" AND job_type IN ({placeholders})"
        params.extend(allowed_types)
    for _ in range(20):
        now = utc_now_iso()
        row = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND available_at <= ? {type_clause}
            ORDER BY priority DESC, available_at ASC, requested_at ASC
            LIMIT 1
            """,
            tuple([now, *params]),
        ).fetchone()
        if not row:
            return None
        job_id = row[0]
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?,
                attempts = attempts + 1
            WHERE id = ? AND status = 'queued'
            """,
            (now, worker_id, now, job_id),
        )
        conn.commit()
        if cursor.rowcount == 1:
            return get_job(conn, job_id)
    return None


def bind_job_run(conn: Any, job_id: str, run_id: str, worker_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET run_id = ?
        WHERE id = ? AND run_id IS NULL AND status = 'running' AND locked_by = ?
        """,
        (run_id, job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def heartbeat_job(conn: Any, job_id: str, worker_id: str) -> bool:
    cursor = conn.execute(
        "UPDATE jobs SET locked_at = ? WHERE id = ? AND status = 'running' AND locked_by = ?",
        (utc_now_iso(), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_job(conn: Any, job_id: str, worker_id: str, error: str) -> bool:
    """Hand a running job back to the queue without touching a job another worker took over."""
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued', locked_by = NULL, locked_at = NULL, started_at = NULL,
            available_at = ?, error = ?
        WHERE id = ? AND status = 'running' AND locked_by = ?
        """,
        (now, error, job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def complete_job(
    conn: Any, job_id: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def retry_job(conn: Any, job_id: str, error: str, delay_seconds: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'queued',
            available_at = ?,
            started_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso_offset(seconds=delay_seconds), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def prune_jobs(conn: Any, retention_hours: int) -> int:
    cutoff = utc_now_iso_offset(seconds=-retention_hours * 3600)
    cursor = conn.execute(
        """
        DELETE FROM jobs
        WHERE status IN ('succeeded', 'failed') AND finished_at IS NOT NULL AND finished_at < ?
        """,
        (cutoff,),
    )
    conn.commit()
    return cursor.rowcount


def count_jobs_by_status(conn: Any) -> dict[str, int]:
    cursor = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
    return {status: int(count) for status, count in cursor.fetchall()}


# --- leases / advisory locks -----------------------------------------------


def try_acquire_lease(
    conn: Any,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
) -> bool:
    if getattr(conn, "backend", "sqlite") == "postgres":
        key = _lease_key(lease_name)
        row = conn.execute("SELECT pg_try_advisory_lock(?)", (key,)).fetchone()
        conn.commit()
        return bool(row and row[0])
    now = utc_now_iso()
    expires_at = utc_now_iso_offset(seconds=ttl_seconds)
    cursor = conn.execute(
        "INSERT OR IGNORE INTO leases (name, holder, expires_at) VALUES (?, ?, ?)",
        (lease_name, holder, expires_at),
    )
    if cursor.rowcount == 1:
        conn.commit()
        return True
    cursor = conn.execute(
        """
        UPDATE leases
        SET holder = ?, expires_at = ?
        WHERE name = ? AND (holder = ? OR expires_at <= ?)
        """,
        (holder, expires_at, lease_name, holder, now),
    )
    conn.commit()
    return cursor.rowcount == 1


def renew_lease(conn: Any, lease_name: str, holder: str, ttl_seconds: int) -> bool:
    if getattr(conn, "backend", "sqlite") == "postgres":
        # Session advisory locks live as long as the connection.
        return True
    cursor = conn.execute(
        "UPDATE leases SET expires_at = ? WHERE name = ? AND holder = ?",
        (utc_now_iso_offset(seconds=ttl_seconds), lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    if getattr(conn, "backend", "sqlite") == "postgres":
        key = _lease_key(lease_name)
        row = conn.execute("SELECT pg_advisory_unlock(?)", (key,)).fetchone()
        conn.commit()
        return bool(row and row[0])
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def _lease_key(lease_name: str) -> int:
    digest = hashlib.sha256(lease_name.encode("utf-8")).digest()
    return struct.unpack(">q", digest[:8])[0]


# --- row mappers -----------------------------------------------------------


def _row_to_feed(row: tuple) -> FeedSource:
    (
        feed_id,
        name,
        format_kind,
        transport,
        locator,
        username,
        password_enc,
        password_key_id,
        schedule_interval_seconds,
        status,
        health_status,
        consecutive_failure_count,
        content_hash,
        eligible,
        last_run_at,
        last_success_at,
        last_failure_at,
        last_error,
        last_error_code,
        next_run_at,
        manual_run_pending,
    ) = row
    return FeedSource(
        id=feed_id,
        name=name,
        format_kind=format_kind,
        transport=transport,
        locator=locator,
        username=username,
        password_enc=password_enc,
        password_key_id=password_key_id,
        schedule_interval_seconds=int(schedule_interval_seconds),
        status=status,
        health_status=health_status,
        consecutive_failure_count=int(consecutive_failure_count),
        content_hash=content_hash,
        eligible=bool(eligible),
        last_run_at=last_run_at,
        last_success_at=last_success_at,
        last_failure_at=last_failure_at,
        last_error=last_error,
        last_error_code=last_error_code,
        next_run_at=next_run_at,
        manual_run_pending=bool(manual_run_pending),
    )


def _row_to_run(row: tuple) -> FeedRun:
    (
        run_id,
        feed_id,
        trigger,
        status,
        started_at,
        completed_at,
        row_count,
        indexed_count,
        quarantined_count,
        rejected_count,
        coercion_count,
        primary_error_code,
        error_codes_json,
        errors_json,
        skip_reason,
        active_before,
        would_expire_count,
        expiry_blocked_reason,
    ) = row
    return FeedRun(
        id=run_id,
        feed_id=feed_id,
        trigger=trigger,
        status=status,
        started_at=started_at,
        completed_at=completed_at,
        row_count=int(row_count),
        indexed_count=int(indexed_count),
        quarantined_count=int(quarantined_count),
        rejected_count=int(rejected_count),
        coercion_count=int(coercion_count),
        primary_error_code=primary_error_code,
        error_codes=json_loads_or(error_codes_json, {}),
        errors=json_loads_or(errors_json, []),
        skip_reason=skip_reason,
        active_before=int(active_before or 0),
        would_expire_count=int(would_expire_count or 0),
        expiry_blocked_reason=expiry_blocked_reason,
    )


def _row_to_quarantined(row: tuple) -> QuarantinedRecord:
    (
        record_id,
        feed_id,
        match_key,
        run_id,
        raw_json,
        parsed_json,
        blocking_errors_json,
        status,
        dismiss_note,
        dismissed_by,
        dismissed_at,
        resolved_at,
        created_at,
        updated_at,
    ) = row
    return QuarantinedRecord(
        id=record_id,
        feed_id=feed_id,
        match_key=match_key,
        run_id=run_id,
        raw=json_loads_or(raw_json, {}),
        parsed=json_loads_or(parsed_json, {}),
        blocking_errors=json_loads_or(blocking_errors_json, []),
        status=status,
        dismiss_note=dismiss_note,
        dismissed_by=dismissed_by,
        dismissed_at=dismissed_at,
        resolved_at=resolved_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_subscription(row: tuple) -> AlertSubscription:
    subscription_id, identifier, channel, target_price, is_active = row
    return AlertSubscription(
        id=subscription_id,
        identifier=identifier,
        channel=channel,
        target_price=float(target_price) if target_price is not None else None,
        is_active=bool(is_active),
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        job_key,
        status,
        payload_json,
        result_json,
        priority,
        requested_at,
        available_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        attempts,
        max_attempts,
        run_id,
        error,
    ) = row
    return Job(
        id=job_id,
        job_type=job_type,
        job_key=job_key,
        status=status,
        payload=json_loads_or(payload_json, {}),
        result=json_loads_or(result_json, None),
        priority=int(priority),
        requested_at=requested_at,
        available_at=available_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        run_id=run_id,
        error=error,
    )


def _bool_to_int(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _int_to_bool(value: object) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _new_job_id() -> str:
    return _new_id("job")


def chunked(items: Iterable[str], size: int) -> list[list[str]]:
    batch: list[str] = []
    out: list[list[str]] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            out.append(batch)
            batch = []
    if batch:
        out.append(batch)
    return out
