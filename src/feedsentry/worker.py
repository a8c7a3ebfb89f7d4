from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any

from .alerts import process_match_batch
from .config import Config, ConfigError, get_state_db_path, load_runtime_config
from .errors import LeaseLostError
from .models import Job
from .notifications import Dispatcher, HealthAlertDispatcher
from .orchestrator import Fetcher, execute_feed_job
from .quarantine import reprocess_record
from .scheduling import (
    JOB_INGEST_FEED,
    JOB_MATCH_RECORDS,
    JOB_PRUNE_JOBS,
    JOB_QUARANTINE_REPROCESS,
    JOB_SCHEDULE_TICK,
    JOB_TYPES,
    run_scheduler_tick,
)
from .storage import (
    claim_next_job,
    complete_job,
    fail_job,
    init_db,
    prune_jobs,
    requeue_job,
    retry_job,
)
from .utils import configure_logging, log_event

WORKER_JOB_TYPES = list(JOB_TYPES)


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsentry.worker")


def _open(db_path: str | None) -> tuple[Any, Config]:
    conn = init_db(db_path or get_state_db_path())
    return conn, load_runtime_config(conn)


def run_once(
    worker_id: str,
    allowed_types: list[str] | None = None,
    db_path: str | None = None,
    dispatcher: Dispatcher | None = None,
    fetcher: Fetcher | None = None,
) -> int:
    logger = _setup_logging()
    try:
        conn, config = _open(db_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if _should_tick_scheduler(allowed_types):
            run_scheduler_tick(conn, max_attempts=config.jobs.max_attempts)
        job = claim_next_job(
            conn,
            worker_id,
            allowed_types=allowed_types or WORKER_JOB_TYPES,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        return _process_claimed_job(conn, config, job, logger, worker_id, dispatcher, fetcher)
    finally:
        conn.close()


def _process_claimed_job(
    conn: Any,
    config: Config,
    job: Job,
    logger: logging.Logger,
    worker_id: str,
    dispatcher: Dispatcher | None = None,
    fetcher: Fetcher | None = None,
) -> int:
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        job_type=job.job_type,
        attempt=job.attempts,
        run_id=job.run_id,
    )
    try:
        result = run_claimed_job(conn, config, job, logger, worker_id, dispatcher, fetcher)
    except LeaseLostError as exc:
        conn.rollback()
        # The bound run stays RUNNING; the next delivery resumes it under the lock.
        requeued = requeue_job(conn, job.id, worker_id, str(exc))
        log_event(
            logger,
            logging.WARNING,
            "job_lease_lost",
            job_id=job.id,
            job_type=job.job_type,
            run_id=job.run_id,
            requeued=requeued,
            error=str(exc),
        )
        return 1
    except Exception as exc:  # noqa: BLE001
        conn.rollback()
        if job.attempts < job.max_attempts:
            delay = config.jobs.retry_backoff_seconds * job.attempts
            retry_job(conn, job.id, str(exc), delay)
            log_event(
                logger,
                logging.WARNING,
                "job_retry_scheduled",
                job_id=job.id,
                job_type=job.job_type,
                attempt=job.attempts,
                delay_seconds=delay,
                error=str(exc),
            )
        else:
            fail_job(conn, job.id, str(exc))
            log_event(
                logger,
                logging.ERROR,
                "job_failed",
                job_id=job.id,
                job_type=job.job_type,
                error=str(exc),
            )
        return 1

    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def _process_claimed_job_thread(worker_id: str, job: Job, db_path: str | None) -> int:
    logger = _setup_logging()
    try:
        conn, config = _open(db_path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        return _process_claimed_job(conn, config, job, logger, worker_id)
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
    db_path: str | None = None,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, allowed_types, db_path)
            time.sleep(sleep_seconds)

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                try:
                    conn, config = _open(db_path)
                except ConfigError as exc:
                    log_event(logger, logging.ERROR, "config_error", error=str(exc))
                    break
                try:
                    if _should_tick_scheduler(allowed_types):
                        run_scheduler_tick(conn, max_attempts=config.jobs.max_attempts)
                    job = claim_next_job(
                        conn,
                        worker_id,
                        allowed_types=allowed_types or WORKER_JOB_TYPES,
                        lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                    )
                finally:
                    conn.close()
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, worker_id, job, db_path))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def run_claimed_job(
    conn: Any,
    config: Config,
    job: Job,
    logger: logging.Logger,
    worker_id: str,
    dispatcher: Dispatcher | None = None,
    fetcher: Fetcher | None = None,
) -> dict[str, object]:
    dispatcher = dispatcher or HealthAlertDispatcher(conn)
    payload = job.payload or {}
    if job.job_type == JOB_INGEST_FEED:
        return execute_feed_job(
            conn,
            job,
            worker_id=worker_id,
            config=config,
            dispatcher=dispatcher,
            fetcher=fetcher,
            logger=configure_logging("feedsentry.orchestrator"),
        )
    if job.job_type == JOB_MATCH_RECORDS:
        return dict(process_match_batch(conn, payload, dispatcher, config.alerts))
    if job.job_type == JOB_QUARANTINE_REPROCESS:
        return reprocess_record(conn, str(payload.get("record_id") or ""))
    if job.job_type == JOB_PRUNE_JOBS:
        deleted = prune_jobs(conn, config.jobs.retention_hours)
        log_event(logger, logging.INFO, "jobs_pruned", deleted=deleted)
        return {"deleted": deleted}
    if job.job_type == JOB_SCHEDULE_TICK:
        return run_scheduler_tick(conn, max_attempts=config.jobs.max_attempts)
    raise ValueError(f"unsupported job type {job.job_type}")


def _should_tick_scheduler(allowed_types: list[str] | None) -> bool:
    if os.environ.get("FS_WORKER_SCHEDULE", "1") != "1":
        return False
    if not allowed_types:
        return True
    return JOB_INGEST_FEED in allowed_types


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsentry-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("FS_WORKER_ONLY_TYPES", ""))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("FS_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
