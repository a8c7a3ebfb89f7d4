import pytest

from conftest import add_feed
from feedsentry.errors import StatusConflictError, ValidationFailedError
from feedsentry.models import DISMISSED, QUARANTINED, RESOLVED
from feedsentry.quarantine import (
    MAX_BULK_IDS,
    bulk_dismiss,
    bulk_reprocess,
    dismiss_record,
    reprocess_record,
    request_reprocess,
)
from feedsentry.storage import (
    count_active_records,
    get_quarantined_record,
    list_jobs,
    list_quarantine_audit,
    mark_quarantine_resolved,
    upsert_quarantined_record,
)

LAMP_RAW = {"title": "Desk Lamp", "price": "25.00", "gtin": "N/A", "sku": "L-1"}
LAMP_ERRORS = [{"field": "identifier", "code": "INVALID_IDENTIFIER", "message": "bad"}]


def _quarantine(conn, match_key="lamp", raw=None):
    add_feed(conn)
    return upsert_quarantined_record(
        conn,
        "acme",
        match_key,
        None,
        raw or LAMP_RAW,
        {"title": "Desk Lamp"},
        LAMP_ERRORS,
    )


def test_dismiss_is_idempotent(conn):
    record_id = _quarantine(conn)

    first = dismiss_record(conn, record_id, "duplicate listing", actor="ops")
    second = dismiss_record(conn, record_id, "duplicate listing", actor="ops")

    assert first.status == DISMISSED and not first.already_dismissed
    assert second.status == DISMISSED and second.already_dismissed
    record = get_quarantined_record(conn, record_id)
    assert record.dismiss_note == "duplicate listing"
    assert record.dismissed_by == "ops"
    assert [entry["action"] for entry in list_quarantine_audit(conn, record_id)] == ["DISMISS"]


def test_dismiss_resolved_record_conflicts(conn):
    record_id = _quarantine(conn)
    assert mark_quarantine_resolved(conn, record_id)

    with pytest.raises(StatusConflictError) as exc:
        dismiss_record(conn, record_id, "too late now")
    assert exc.value.current_status == RESOLVED
    assert get_quarantined_record(conn, record_id).status == RESOLVED


def test_dismiss_requires_note_and_record(conn):
    record_id = _quarantine(conn)
    with pytest.raises(ValidationFailedError):
        dismiss_record(conn, record_id, "  ok ")
    with pytest.raises(ValidationFailedError):
        dismiss_record(conn, record_id, None)
    with pytest.raises(LookupError):
        dismiss_record(conn, "qr_missing", "not here")
    assert get_quarantined_record(conn, record_id).status == QUARANTINED


def test_bulk_dismiss_reports_per_record(conn):
    first = _quarantine(conn, "a")
    second = _quarantine(conn, "b")
    resolved = _quarantine(conn, "c")
    mark_quarantine_resolved(conn, resolved)
    dismiss_record(conn, second, "earlier pass")

    outcomes = bulk_dismiss(conn, [first, second, resolved, "qr_missing", first], "bulk cleanup")

    assert outcomes == {
        first: "dismissed",
        second: "already_dismissed",
        resolved: "conflict",
        "qr_missing": "missing",
    }


def test_bulk_dismiss_validation(conn):
    record_id = _quarantine(conn)
    with pytest.raises(ValidationFailedError):
        bulk_dismiss(conn, [record_id], "short")
    with pytest.raises(ValidationFailedError):
        bulk_dismiss(conn, [], "a long enough note")
    with pytest.raises(ValidationFailedError):
        bulk_dismiss(conn, [record_id] * (MAX_BULK_IDS + 1), "a long enough note")
    assert get_quarantined_record(conn, record_id).status == QUARANTINED


def test_request_reprocess_enqueues_once(conn):
    record_id = _quarantine(conn)

    first = request_reprocess(conn, record_id, actor="ops")
    second = request_reprocess(conn, record_id, actor="ops")

    assert first["enqueued"] is True
    assert second["enqueued"] is False
    assert first["job_id"] == second["job_id"]
    jobs = list_jobs(conn)
    assert len(jobs) == 1
    assert jobs[0].job_type == "quarantine_reprocess"
    assert jobs[0].payload == {"record_id": record_id}
    assert get_quarantined_record(conn, record_id).status == QUARANTINED


def test_request_reprocess_rejects_dismissed(conn):
    record_id = _quarantine(conn)
    dismiss_record(conn, record_id, "not a product")
    with pytest.raises(StatusConflictError):
        request_reprocess(conn, record_id)
    with pytest.raises(LookupError):
        request_reprocess(conn, "qr_missing")


def test_bulk_reprocess_acknowledges_each(conn):
    record_id = _quarantine(conn, "a")
    dismissed = _quarantine(conn, "b")
    dismiss_record(conn, dismissed, "not a product")

    acks = bulk_reprocess(conn, [record_id, dismissed, "qr_missing"])

    assert acks[record_id]["enqueued"] is True
    assert acks[dismissed] == {"record_id": dismissed, "error": "conflict", "status": DISMISSED}
    assert acks["qr_missing"]["error"] == "missing"


def test_reprocess_still_blocked_keeps_record(conn):
    record_id = _quarantine(conn)

    outcome = reprocess_record(conn, record_id)

    assert outcome["outcome"] == "still_quarantined"
    record = get_quarantined_record(conn, record_id)
    assert record.status == QUARANTINED
    assert record.blocking_errors[0]["code"] == "INVALID_IDENTIFIER"
    assert count_active_records(conn, "acme") == 0


def test_reprocess_resolves_after_feed_fix(conn):
    record_id = _quarantine(conn)
    fixed = dict(LAMP_RAW, gtin="012345678905")
    assert _quarantine(conn, raw=fixed) == record_id

    outcome = reprocess_record(conn, record_id)

    assert outcome["outcome"] == "resolved"
    assert get_quarantined_record(conn, record_id).status == RESOLVED
    assert count_active_records(conn, "acme") == 1
    actions = [entry["action"] for entry in list_quarantine_audit(conn, record_id)]
    assert actions == ["RESOLVED"]


def test_reprocess_skips_non_quarantined(conn):
    record_id = _quarantine(conn)
    dismiss_record(conn, record_id, "not a product")
    assert reprocess_record(conn, record_id)["outcome"] == "skipped"
    assert reprocess_record(conn, "qr_missing")["outcome"] == "missing"
