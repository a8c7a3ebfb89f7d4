from __future__ import annotations

from typing import Any

from ..models import (
    FEED_DISABLED,
    FEED_DRAFT,
    FEED_ENABLED,
    FORMAT_KINDS,
    TRANSPORTS,
    FeedSource,
)
from ..security.secrets import encrypt_feed_password
from ..storage import (
    enable_feed,
    get_feed,
    list_feeds,
    reset_feed_content_hash,
    set_feed_status,
    upsert_feed,
)

FEED_STATUSES = (FEED_ENABLED, FEED_DISABLED, FEED_DRAFT)
DEFAULT_INTERVAL_MINUTES = 24 * 60


def feed_to_dict(feed: FeedSource) -> dict[str, Any]:
    return {
        "id": feed.id,
        "name": feed.name,
        "format_kind": feed.format_kind,
        "transport": feed.transport,
        "locator": feed.locator,
        "username": feed.username,
        "has_password": bool(feed.password_enc),
        "schedule_interval_minutes": feed.schedule_interval_seconds // 60,
        "status": feed.status,
        "health_status": feed.health_status,
        "consecutive_failure_count": feed.consecutive_failure_count,
        "eligible": feed.eligible,
        "last_run_at": feed.last_run_at,
        "last_success_at": feed.last_success_at,
        "last_failure_at": feed.last_failure_at,
        "last_error": feed.last_error,
        "last_error_code": feed.last_error_code,
        "next_run_at": feed.next_run_at,
        "has_content_hash": bool(feed.content_hash),
        "manual_run_pending": feed.manual_run_pending,
    }


def list_feed_dicts(conn: Any, status: str | None = None) -> list[dict[str, Any]]:
    return [feed_to_dict(feed) for feed in list_feeds(conn, status=status)]


def get_feed_dict(conn: Any, feed_id: str) -> dict[str, Any] | None:
    feed = get_feed(conn, feed_id)
    return feed_to_dict(feed) if feed else None


def create_feed(conn: Any, payload: dict[str, Any]) -> dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    feed_id = str(payload.get("id") or "").strip() or _generate_feed_id(conn, name)
    if get_feed(conn, feed_id) is not None:
        raise ValueError(f"feed already exists: {feed_id}")
    upsert_feed(conn, _build_feed_row(feed_id, payload, current=None))
    return get_feed_dict(conn, feed_id) or {}


def update_feed(conn: Any, feed_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    current = get_feed(conn, feed_id)
    if current is None:
        raise LookupError(f"feed not found: {feed_id}")
    upsert_feed(conn, _build_feed_row(feed_id, payload, current=current))
    return get_feed_dict(conn, feed_id) or {}


def import_feeds(conn: Any, entries: list[dict[str, Any]]) -> dict[str, int]:
    """Create or update feeds from an import file. Health state of existing feeds is kept."""
    created = 0
    updated = 0
    for entry in entries:
        feed_id = str(entry.get("id") or "").strip()
        current = get_feed(conn, feed_id) if feed_id else None
        if current is None:
            create_feed(conn, entry)
            created += 1
        else:
            update_feed(conn, feed_id, entry)
            updated += 1
    return {"created": created, "updated": updated}


def set_feed_enabled(conn: Any, feed_id: str, enabled: bool) -> dict[str, Any]:
    """Enabling resets the consecutive failure count and makes the feed due now."""
    ok = enable_feed(conn, feed_id) if enabled else set_feed_status(conn, feed_id, FEED_DISABLED)
    if not ok:
        raise LookupError(f"feed not found: {feed_id}")
    return get_feed_dict(conn, feed_id) or {}


def reset_feed_content(conn: Any, feed_id: str) -> dict[str, Any]:
    """Forget the stored content hash so the next run processes the feed even if unchanged."""
    if not reset_feed_content_hash(conn, feed_id):
        raise LookupError(f"feed not found: {feed_id}")
    return get_feed_dict(conn, feed_id) or {}


def _build_feed_row(
    feed_id: str,
    payload: dict[str, Any],
    current: FeedSource | None,
) -> dict[str, object]:
    name = str(payload.get("name") or (current.name if current else "")).strip()
    if not name:
        raise ValueError("name is required")
    locator = str(payload.get("locator") or (current.locator if current else "")).strip()
    if not locator:
        raise ValueError("locator is required")

    format_kind = str(payload.get("format_kind") or (current.format_kind if current else "GENERIC"))
    format_kind = format_kind.strip().upper()
    if format_kind not in FORMAT_KINDS:
        raise ValueError(f"format_kind must be one of {', '.join(FORMAT_KINDS)}")

    transport = str(payload.get("transport") or (current.transport if current else "HTTP"))
    transport = transport.strip().upper()
    if transport not in TRANSPORTS:
        raise ValueError(f"transport must be one of {', '.join(TRANSPORTS)}")

    status = str(payload.get("status") or (current.status if current else FEED_ENABLED))
    status = status.strip().upper()
    if status not in FEED_STATUSES:
        raise ValueError(f"status must be one of {', '.join(FEED_STATUSES)}")

    if payload.get("schedule_interval_minutes") is not None:
        interval_minutes = _positive_int(payload["schedule_interval_minutes"], "schedule_interval_minutes")
        interval_seconds = interval_minutes * 60
    elif current:
        interval_seconds = current.schedule_interval_seconds
    else:
        interval_seconds = DEFAULT_INTERVAL_MINUTES * 60

    eligible = payload.get("eligible")
    if eligible is None:
        eligible = current.eligible if current else True

    if "username" in payload:
        username = str(payload.get("username") or "").strip() or None
    else:
        username = current.username if current else None
    password_enc = current.password_enc if current else None
    password_key_id = current.password_key_id if current else None
    password = payload.get("password")
    if password:
        password_key_id, password_enc = encrypt_feed_password(feed_id, str(password))
    elif "password" in payload and password is not None:
        password_enc = None
        password_key_id = None

    if transport == "AUTH_URL" and not (username and password_enc):
        raise ValueError("AUTH_URL feeds require username and password")

    return {
        "id": feed_id,
        "name": name,
        "format_kind": format_kind,
        "transport": transport,
        "locator": locator,
        "username": username,
        "password_enc": password_enc,
        "password_key_id": password_key_id,
        "schedule_interval_seconds": interval_seconds,
        "status": status,
        "eligible": bool(eligible),
    }


def _positive_int(value: Any, field_name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be an integer") from exc
    if number < 1:
        raise ValueError(f"{field_name} must be at least 1")
    return number


def _slugify(value: str) -> str:
    value = value.strip().lower()
    out = []
    dash = False
    for ch in value:
        if ch.isalnum():
            out.append(ch)
            dash = False
        elif not dash:
            out.append("-")
            dash = True
    slug = "".join(out).strip("-")
    return slug or "feed"


def _generate_feed_id(conn: Any, name: str) -> str:
    base = _slugify(name)
    candidate = base
    i = 2
    while get_feed(conn, candidate) is not None:
        candidate = f"{base}-{i}"
        i += 1
    return candidate
