from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from .connectors import map_row
from .errors import StatusConflictError, ValidationFailedError
from .models import DISMISSED, QUARANTINED, RESOLVED, RowOk
from .orchestrator import compute_record_key
from .scheduling import JOB_QUARANTINE_REPROCESS, subject_job_key
from .storage import (
    enqueue_job,
    get_quarantine_status,
    get_quarantined_record,
    insert_quarantine_audit,
    mark_quarantine_dismissed,
    mark_quarantine_resolved,
    update_quarantine_errors,
    upsert_indexable_record,
)
from .utils import log_event

SINGLE_NOTE_MIN_LENGTH = 3
BULK_NOTE_MIN_LENGTH = 10
MAX_BULK_IDS = 500

AUDIT_DISMISS = "DISMISS"
AUDIT_REPROCESS_REQUESTED = "REPROCESS_REQUESTED"
AUDIT_RESOLVED = "RESOLVED"

OUTCOME_DISMISSED = "dismissed"
OUTCOME_ALREADY_DISMISSED = "already_dismissed"
OUTCOME_CONFLICT = "conflict"
OUTCOME_MISSING = "missing"


@dataclass(frozen=True)
class DismissResult:
    record_id: str
    status: str
    already_dismissed: bool


def dismiss_record(
    conn: Any,
    record_id: str,
    note: str | None,
    actor: str | None = None,
    min_note_length: int = SINGLE_NOTE_MIN_LENGTH,
) -> DismissResult:
    note = _require_note(note, min_note_length)
    if mark_quarantine_dismissed(conn, record_id, note, actor):
        insert_quarantine_audit(conn, record_id, AUDIT_DISMISS, actor, note)
        return DismissResult(record_id=record_id, status=DISMISSED, already_dismissed=False)
    status = get_quarantine_status(conn, record_id)
    if status is None:
        raise LookupError(f"quarantined record not found: {record_id}")
    if status == DISMISSED:
        return DismissResult(record_id=record_id, status=DISMISSED, already_dismissed=True)
    raise StatusConflictError(
        f"record {record_id} is {status}; only QUARANTINED records can be dismissed",
        current_status=status,
    )


def bulk_dismiss(
    conn: Any,
    record_ids: list[str],
    note: str | None,
    actor: str | None = None,
) -> dict[str, str]:
    note = _require_note(note, BULK_NOTE_MIN_LENGTH)
    _require_ids(record_ids)
    outcomes: dict[str, str] = {}
    for record_id in dict.fromkeys(record_ids):
        try:
            result = dismiss_record(conn, record_id, note, actor, BULK_NOTE_MIN_LENGTH)
        except StatusConflictError:
            outcomes[record_id] = OUTCOME_CONFLICT
        except LookupError:
            outcomes[record_id] = OUTCOME_MISSING
        else:
            outcomes[record_id] = (
                OUTCOME_ALREADY_DISMISSED if result.already_dismissed else OUTCOME_DISMISSED
            )
    return outcomes


def request_reprocess(conn: Any, record_id: str, actor: str | None = None) -> dict[str, object]:
    """Queue a re-validation of one quarantined record. The record status is unchanged."""
    status = get_quarantine_status(conn, record_id)
    if status is None:
        raise LookupError(f"quarantined record not found: {record_id}")
    if status != QUARANTINED:
        raise StatusConflictError(
            f"record {record_id} is {status}; only QUARANTINED records can be reprocessed",
            current_status=status,
        )
    insert_quarantine_audit(conn, record_id, AUDIT_REPROCESS_REQUESTED, actor)
    result = enqueue_job(
        conn,
        JOB_QUARANTINE_REPROCESS,
        {"record_id": record_id},
        job_key=subject_job_key("quarantine-reprocess", record_id),
    )
    return {"record_id": record_id, "job_id": result.job_id, "enqueued": result.created}


def bulk_reprocess(
    conn: Any,
    record_ids: list[str],
    actor: str | None = None,
) -> dict[str, dict[str, object]]:
    _require_ids(record_ids)
    acknowledgements: dict[str, dict[str, object]] = {}
    for record_id in dict.fromkeys(record_ids):
        try:
            acknowledgements[record_id] = request_reprocess(conn, record_id, actor)
        except StatusConflictError as exc:
            acknowledgements[record_id] = {
                "record_id": record_id,
                "error": OUTCOME_CONFLICT,
                "status": exc.current_status,
            }
        except LookupError:
            acknowledgements[record_id] = {"record_id": record_id, "error": OUTCOME_MISSING}
    return acknowledgements


def reprocess_record(
    conn: Any,
    record_id: str,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    logger = logger or logging.getLogger("feedsentry.quarantine")
    record = get_quarantined_record(conn, record_id)
    if record is None:
        return {"record_id": record_id, "outcome": OUTCOME_MISSING}
    if record.status != QUARANTINED:
        return {"record_id": record_id, "outcome": "skipped", "status": record.status}

    result = map_row(record.raw, 0)
    if isinstance(result, RowOk):
        key = compute_record_key(result.record)
        upsert_indexable_record(
            conn,
            record.feed_id,
            None,
            key,
            result.record,
            [asdict(item) for item in result.coercions],
        )
        if mark_quarantine_resolved(conn, record_id):
            insert_quarantine_audit(conn, record_id, AUDIT_RESOLVED, "reprocess")
        log_event(logger, logging.INFO, "quarantine_resolved", record_id=record_id, feed_id=record.feed_id)
        return {"record_id": record_id, "outcome": RESOLVED.lower(), "record_key": key}

    update_quarantine_errors(conn, record_id, [asdict(error) for error in result.errors])
    log_event(
        logger,
        logging.INFO,
        "quarantine_still_blocked",
        record_id=record_id,
        codes=",".join(error.code for error in result.errors),
    )
    return {"record_id": record_id, "outcome": "still_quarantined"}


def _require_note(note: str | None, min_length: int) -> str:
    stripped = (note or "").strip()
    if len(stripped) < min_length:
        raise ValidationFailedError(f"note is required (minimum {min_length} characters)")
    return stripped


def _require_ids(record_ids: list[str]) -> None:
    if not record_ids:
        raise ValidationFailedError("at least one record id is required")
    if len(record_ids) > MAX_BULK_IDS:
        raise ValidationFailedError(f"at most {MAX_BULK_IDS} record ids per request")
