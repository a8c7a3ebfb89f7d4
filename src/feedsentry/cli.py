from __future__ import annotations

import argparse
import json
import logging
from typing import Any

import uvicorn

from .config import ConfigError, get_state_db_path, load_feeds_file, load_runtime_config
from .errors import LeaseLostError, StatusConflictError, ValidationFailedError
from .notifications import HealthAlertDispatcher
from .orchestrator import run_feed_now
from .quarantine import dismiss_record
from .scheduling import JOB_TYPES, enqueue_manual_run, run_scheduler_tick
from .services.feeds_service import (
    import_feeds,
    list_feed_dicts,
    reset_feed_content,
    set_feed_enabled,
)
from .storage import enqueue_job, init_db, list_jobs, list_quarantined_records
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsentry")


def _open(args: argparse.Namespace, logger: logging.Logger) -> tuple[Any, Any] | None:
    conn = init_db(args.db or get_state_db_path())
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None
    return conn, config


def _cmd_feeds_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    log_event(logger, logging.INFO, "feeds_import_path", path=args.path)
    try:
        entries = load_feeds_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "feeds_import_error", error=str(exc))
        return 1
    if not entries:
        log_event(logger, logging.ERROR, "feeds_import_error", error="no feeds found")
        return 1
    try:
        counts = import_feeds(conn, entries)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "feeds_import_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "feeds_imported", **counts)
    return 0


def _cmd_feeds_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    feeds = list_feed_dicts(conn, status=args.status)
    if not feeds:
        log_event(
            logger,
            logging.WARNING,
            "no_feeds",
            hint="Import feeds with `feedsentry feeds import feeds.yml`",
        )
        return 1
    for feed in feeds:
        log_event(
            logger,
            logging.INFO,
            "feed",
            feed_id=feed["id"],
            status=feed["status"],
            health=feed["health_status"],
            failures=feed["consecutive_failure_count"],
            next_run_at=feed["next_run_at"],
        )
    log_event(logger, logging.INFO, "feeds_listed", count=len(feeds))
    return 0


def _cmd_feeds_set_enabled(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    try:
        feed = set_feed_enabled(conn, args.feed_id, args.enabled)
    except LookupError:
        log_event(logger, logging.ERROR, "feed_not_found", feed_id=args.feed_id)
        return 1
    log_event(logger, logging.INFO, "feed_status_changed", feed_id=args.feed_id, status=feed["status"])
    return 0


def _cmd_feeds_reset_hash(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    try:
        reset_feed_content(conn, args.feed_id)
    except LookupError:
        log_event(logger, logging.ERROR, "feed_not_found", feed_id=args.feed_id)
        return 1
    log_event(logger, logging.INFO, "feed_hash_reset", feed_id=args.feed_id)
    return 0


def _cmd_run_feed(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, config = opened
    if args.enqueue:
        try:
            result = enqueue_manual_run(conn, args.feed_id, max_attempts=config.jobs.max_attempts)
        except LookupError:
            log_event(logger, logging.ERROR, "feed_not_found", feed_id=args.feed_id)
            return 1
        log_event(logger, logging.INFO, "job_enqueued", job_id=result.job_id, created=result.created)
        return 0
    try:
        summary = run_feed_now(
            conn,
            args.feed_id,
            holder=f"cli:{args.feed_id}",
            config=config,
            dispatcher=HealthAlertDispatcher(conn),
            logger=configure_logging("feedsentry.orchestrator"),
        )
    except LookupError:
        log_event(logger, logging.ERROR, "feed_not_found", feed_id=args.feed_id)
        return 1
    except LeaseLostError as exc:
        log_event(logger, logging.ERROR, "feed_lease_lost", feed_id=args.feed_id, error=str(exc))
        return 1
    if summary is None:
        log_event(logger, logging.ERROR, "feed_locked", feed_id=args.feed_id)
        return 1
    log_event(
        logger,
        logging.INFO,
        "run_complete",
        feed_id=summary.feed_id,
        run_id=summary.run_id,
        status=summary.status,
        indexed=summary.indexed_count,
        quarantined=summary.quarantined_count,
        rejected=summary.rejected_count,
        primary_error_code=summary.primary_error_code,
    )
    return 0


def _cmd_schedule_tick(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, config = opened
    result = run_scheduler_tick(conn, max_attempts=config.jobs.max_attempts)
    log_event(logger, logging.INFO, "schedule_tick", **result)
    return 0


def _cmd_quarantine_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    records = list_quarantined_records(conn, feed_id=args.feed_id, limit=args.limit)
    for record in records:
        log_event(
            logger,
            logging.INFO,
            "quarantined_record",
            record_id=record.id,
            feed_id=record.feed_id,
            codes=",".join(str(item.get("code")) for item in record.blocking_errors),
        )
    log_event(logger, logging.INFO, "quarantine_listed", count=len(records))
    return 0


def _cmd_quarantine_dismiss(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    try:
        result = dismiss_record(conn, args.record_id, args.note, actor=args.actor)
    except ValidationFailedError as exc:
        log_event(logger, logging.ERROR, "dismiss_invalid", error=str(exc))
        return 1
    except StatusConflictError as exc:
        log_event(logger, logging.ERROR, "dismiss_conflict", record_id=args.record_id, status=exc.current_status)
        return 1
    except LookupError:
        log_event(logger, logging.ERROR, "record_not_found", record_id=args.record_id)
        return 1
    log_event(
        logger,
        logging.INFO,
        "record_dismissed",
        record_id=result.record_id,
        already_dismissed=result.already_dismissed,
    )
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = args.db or get_state_db_path()
    conn = init_db(path)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    try:
        payload = json.loads(args.payload) if args.payload else None
    except json.JSONDecodeError as exc:
        log_event(logger, logging.ERROR, "payload_invalid", error=str(exc))
        return 1
    result = enqueue_job(conn, args.job_type, payload, job_key=args.job_key)
    log_event(
        logger,
        logging.INFO,
        "job_enqueued",
        job_id=result.job_id,
        job_type=args.job_type,
        created=result.created,
    )
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    conn, _ = opened
    for job in list_jobs(conn, limit=args.limit, status=args.status):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            run_id=job.run_id,
            requested_at=job.requested_at,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "admin_serving", host=args.host, port=args.port)
    uvicorn.run("feedsentry.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsentry", description="FeedSentry CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $FS_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    feeds_parser = subparsers.add_parser("feeds", help="Manage feeds")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)

    feeds_import = feeds_subparsers.add_parser("import", help="Import feeds from YAML")
    feeds_import.add_argument("path", help="Path to feeds YAML file")
    feeds_import.set_defaults(func=_cmd_feeds_import)

    feeds_list = feeds_subparsers.add_parser("list", help="List feeds")
    feeds_list.add_argument("--status", choices=["ENABLED", "DISABLED", "DRAFT"], default=None)
    feeds_list.set_defaults(func=_cmd_feeds_list)

    feeds_enable = feeds_subparsers.add_parser("enable", help="Enable a feed and reset its failure count")
    feeds_enable.add_argument("feed_id", help="Feed id")
    feeds_enable.set_defaults(func=_cmd_feeds_set_enabled, enabled=True)

    feeds_disable = feeds_subparsers.add_parser("disable", help="Disable a feed")
    feeds_disable.add_argument("feed_id", help="Feed id")
    feeds_disable.set_defaults(func=_cmd_feeds_set_enabled, enabled=False)

    feeds_reset = feeds_subparsers.add_parser(
        "reset-hash", help="Forget the stored content hash so the next run reprocesses the feed"
    )
    feeds_reset.add_argument("feed_id", help="Feed id")
    feeds_reset.set_defaults(func=_cmd_feeds_reset_hash)

    run_parser = subparsers.add_parser("run-feed", help="Run one feed now")
    run_parser.add_argument("feed_id", help="Feed id")
    run_parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Queue a manual run for the worker instead of running inline",
    )
    run_parser.set_defaults(func=_cmd_run_feed)

    schedule_parser = subparsers.add_parser("schedule", help="Scheduler commands")
    schedule_subparsers = schedule_parser.add_subparsers(dest="schedule_command", required=True)
    schedule_tick = schedule_subparsers.add_parser("tick", help="Enqueue due feeds and maintenance")
    schedule_tick.set_defaults(func=_cmd_schedule_tick)

    quarantine_parser = subparsers.add_parser("quarantine", help="Quarantine triage")
    quarantine_subparsers = quarantine_parser.add_subparsers(dest="quarantine_command", required=True)

    quarantine_list = quarantine_subparsers.add_parser("list", help="List quarantined records")
    quarantine_list.add_argument("--feed-id", default=None)
    quarantine_list.add_argument("--limit", type=int, default=50)
    quarantine_list.set_defaults(func=_cmd_quarantine_list)

    quarantine_dismiss = quarantine_subparsers.add_parser("dismiss", help="Dismiss a quarantined record")
    quarantine_dismiss.add_argument("record_id", help="Quarantined record id")
    quarantine_dismiss.add_argument("--note", required=True, help="Reason for dismissal")
    quarantine_dismiss.add_argument("--actor", default="cli")
    quarantine_dismiss.set_defaults(func=_cmd_quarantine_dismiss)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=list(JOB_TYPES), help="Job type to enqueue")
    jobs_enqueue.add_argument("--payload", default=None, help="JSON payload")
    jobs_enqueue.add_argument("--job-key", default=None, help="Idempotency key")
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.add_argument("--status", default=None)
    jobs_list.set_defaults(func=_cmd_jobs_list)

    serve_parser = subparsers.add_parser("serve", help="Serve the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
