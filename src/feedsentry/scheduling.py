from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .models import TRIGGER_MANUAL, TRIGGER_SCHEDULED, EnqueueResult
from .storage import chunked, enqueue_job, get_feed, list_due_feeds
from .utils import isoformat_utc, log_event, utc_now

FEED_WINDOW_SECONDS = 300
MAINTENANCE_WINDOW_SECONDS = 7200

JOB_INGEST_FEED = "ingest_feed"
JOB_MATCH_RECORDS = "match_records"
JOB_QUARANTINE_REPROCESS = "quarantine_reprocess"
JOB_PRUNE_JOBS = "prune_jobs"
JOB_SCHEDULE_TICK = "schedule_due_feeds"

JOB_TYPES = (
    JOB_INGEST_FEED,
    JOB_MATCH_RECORDS,
    JOB_QUARANTINE_REPROCESS,
    JOB_PRUNE_JOBS,
    JOB_SCHEDULE_TICK,
)

MANUAL_PRIORITY = 10


def window_start(now: datetime, window_seconds: int) -> datetime:
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % window_seconds, tz=timezone.utc)


def windowed_job_key(kind: str, subject_id: str, now: datetime, window_seconds: int) -> str:
    start = isoformat_utc(window_start(now, window_seconds))
    return f"{kind}:{subject_id}:{start.replace(':', '-').replace('.', '-')}"


def subject_job_key(kind: str, subject_id: str) -> str:
    return f"{kind}:{subject_id}"


def batch_job_key(run_id: str, batch_index: int) -> str:
    return f"batch:{run_id}:{batch_index}"


def schedule_due_feeds(
    conn: Any,
    now: datetime | None = None,
    max_attempts: int = 3,
    logger: logging.Logger | None = None,
) -> dict[str, int]:
    """Enqueue one ingest job per due feed for the current feed window."""
    logger = logger or logging.getLogger("feedsentry.scheduling")
    now = now or utc_now()
    due = list_due_feeds(conn, isoformat_utc(now))
    enqueued = 0
    deduplicated = 0
    for feed in due:
        result = enqueue_job(
            conn,
            JOB_INGEST_FEED,
            {"feed_id": feed.id, "trigger": TRIGGER_SCHEDULED},
            job_key=windowed_job_key(JOB_INGEST_FEED, feed.id, now, FEED_WINDOW_SECONDS),
            max_attempts=max_attempts,
        )
        if result.created:
            enqueued += 1
        else:
            deduplicated += 1
    log_event(
        logger,
        logging.INFO,
        "feeds_scheduled",
        due=len(due),
        enqueued=enqueued,
        deduplicated=deduplicated,
    )
    return {"due": len(due), "enqueued": enqueued, "deduplicated": deduplicated}


def schedule_maintenance(conn: Any, now: datetime | None = None) -> EnqueueResult:
    now = now or utc_now()
    return enqueue_job(
        conn,
        JOB_PRUNE_JOBS,
        None,
        job_key=windowed_job_key(JOB_PRUNE_JOBS, "queue", now, MAINTENANCE_WINDOW_SECONDS),
    )


def enqueue_manual_run(
    conn: Any,
    feed_id: str,
    now: datetime | None = None,
    max_attempts: int = 3,
) -> EnqueueResult:
    if get_feed(conn, feed_id) is None:
        raise LookupError(f"feed not found: {feed_id}")
    now = now or utc_now()
    return enqueue_job(
        conn,
        JOB_INGEST_FEED,
        {"feed_id": feed_id, "trigger": TRIGGER_MANUAL},
        job_key=windowed_job_key(TRIGGER_MANUAL, feed_id, now, FEED_WINDOW_SECONDS),
        priority=MANUAL_PRIORITY,
        max_attempts=max_attempts,
    )


def enqueue_manual_followup(
    conn: Any,
    feed_id: str,
    after_run_id: str,
    max_attempts: int = 3,
) -> EnqueueResult:
    """Queue the manual run that was deferred while after_run_id held the feed lock."""
    return enqueue_job(
        conn,
        JOB_INGEST_FEED,
        {"feed_id": feed_id, "trigger": TRIGGER_MANUAL},
        job_key=subject_job_key("manual-followup", f"{feed_id}:{after_run_id}"),
        priority=MANUAL_PRIORITY,
        max_attempts=max_attempts,
    )


def enqueue_match_batches(
    conn: Any,
    feed_id: str,
    run_id: str,
    record_keys: list[str],
    batch_size: int,
) -> list[EnqueueResult]:
    results = []
    for index, batch in enumerate(chunked(record_keys, batch_size)):
        results.append(
            enqueue_job(
                conn,
                JOB_MATCH_RECORDS,
                {"feed_id": feed_id, "run_id": run_id, "record_keys": batch},
                job_key=batch_job_key(run_id, index),
            )
        )
    return results


def run_scheduler_tick(conn: Any, now: datetime | None = None, max_attempts: int = 3) -> dict[str, Any]:
    now = now or utc_now()
    feeds = schedule_due_feeds(conn, now, max_attempts=max_attempts)
    maintenance = schedule_maintenance(conn, now)
    return {**feeds, "maintenance_enqueued": maintenance.created}
