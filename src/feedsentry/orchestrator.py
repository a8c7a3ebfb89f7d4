from __future__ import annotations

import logging
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field, replace
from datetime import timedelta
from typing import Any, Callable

from .config import Config, HealthThresholds
from .connectors import has_minimum_fields, parse_content
from .errors import ErrorCode, FetchError, LeaseLostError, ParseFailure, RunBindingError
from .expiry_guard import ExpiryCheck, evaluate_expiry
from .failure_policy import PolicyDecision, apply_failure_policy
from .fetch import Credentials, fetch_feed
from .models import (
    FEED_DISABLED,
    FEED_DRAFT,
    HEALTH_FAILED,
    HEALTH_HEALTHY,
    HEALTH_PENDING,
    HEALTH_WARNING,
    NOTIFY_EXPIRY_BLOCKED,
    NOTIFY_RECOVERY,
    NOTIFY_WARNING,
    RUN_FAILED,
    RUN_OPEN_STATUSES,
    RUN_SKIPPED,
    RUN_SUCCEEDED,
    RUN_WARNING,
    TRIGGER_MANUAL,
    TRIGGER_SCHEDULED,
    FeedSource,
    Job,
    ProductRecord,
    RowOk,
)
from .notifications import Dispatcher, dispatch_feed_notifications
from .scheduling import enqueue_manual_followup, enqueue_match_batches
from .security.secrets import decrypt_feed_password
from .storage import (
    bind_job_run,
    count_expiry_candidates,
    create_run,
    deactivate_untouched_records,
    finalize_run,
    get_feed,
    get_run,
    heartbeat_job,
    record_expiry_check,
    record_price_observation,
    release_lease,
    renew_lease,
    resolve_quarantined_by_match_key,
    set_manual_run_pending,
    take_manual_run_pending,
    touch_feed_run,
    try_acquire_lease,
    update_feed_health,
    upsert_indexable_record,
    upsert_quarantined_record,
)
from .utils import isoformat_utc, log_event, sha256_hex, utc_now

SKIP_NO_CHANGES = "NO_CHANGES"
SKIP_DRAFT = "DRAFT_STATUS"
SKIP_DISABLED = "DISABLED_STATUS"
MAX_BLOCKING_ERRORS = 20

RUN_STATUS_BY_HEALTH = {
    HEALTH_FAILED: RUN_FAILED,
    HEALTH_WARNING: RUN_WARNING,
    HEALTH_HEALTHY: RUN_SUCCEEDED,
}

Eligibility = Callable[[FeedSource, str], "tuple[bool, str | None]"]
Fetcher = Callable[[FeedSource], bytes]


@dataclass(frozen=True)
class RunSummary:
    run_id: str
    feed_id: str
    status: str
    health_status: str | None
    row_count: int
    indexed_count: int
    quarantined_count: int
    rejected_count: int
    primary_error_code: str | None
    skip_reason: str | None
    notifications: tuple[str, ...]
    match_batches: int
    expiry_blocked_reason: str | None = None


class LeaseKeeper:
    """Keeps the feed lease and the job lock fresh for as long as a run is in progress.

    Each beat extends the lease and heartbeats the job. A beat that finds either one
    taken over raises LeaseLostError, which aborts the run attempt.
    """

    def __init__(
        self,
        conn: Any,
        lease_name: str,
        holder: str,
        ttl_seconds: int,
        *,
        job_id: str | None = None,
        worker_id: str | None = None,
        interval_seconds: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.lease_name = lease_name
        self.holder = holder
        self.ttl_seconds = ttl_seconds
        self.job_id = job_id
        self.worker_id = worker_id
        self.logger = logger or logging.getLogger("feedsentry.orchestrator")
        self.interval = max(interval_seconds or ttl_seconds / 3.0, 0.05)
        self._last_beat = time.monotonic()

    def beat(self) -> None:
        if not renew_lease(self.conn, self.lease_name, self.holder, self.ttl_seconds):
            log_event(self.logger, logging.ERROR, "lease_lost", lease=self.lease_name, holder=self.holder)
            raise LeaseLostError(f"{self.lease_name} is no longer held by {self.holder}")
        if self.job_id and not heartbeat_job(self.conn, self.job_id, self.worker_id or ""):
            log_event(self.logger, logging.ERROR, "job_lock_lost", job_id=self.job_id, worker_id=self.worker_id)
            raise LeaseLostError(f"job {self.job_id} is no longer locked by {self.worker_id}")
        self._last_beat = time.monotonic()

    def tick(self) -> None:
        if time.monotonic() - self._last_beat >= self.interval:
            self.beat()

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run fn on a helper thread and keep beating until it returns.

        Only fn runs on the helper thread; every database write stays on the caller's
        connection and thread.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="feedsentry-fetch")
        try:
            future = executor.submit(fn, *args)
            while not future.done():
                done, _ = wait([future], timeout=self.interval)
                if not done:
                    self.beat()
            result = future.result()
        finally:
            executor.shutdown(wait=False)
        self.beat()
        return result


@dataclass
class _RowTally:
    indexed: int = 0
    quarantined: int = 0
    rejected: int = 0
    coercions: int = 0
    record_keys: list[str] = field(default_factory=list)
    errors: list[dict[str, object]] = field(default_factory=list)
    codes: Counter = field(default_factory=Counter)


def default_eligibility(feed: FeedSource, trigger: str) -> tuple[bool, str | None]:
    if feed.status == FEED_DRAFT:
        return False, SKIP_DRAFT
    if feed.status == FEED_DISABLED and trigger != TRIGGER_MANUAL:
        return False, SKIP_DISABLED
    if not feed.eligible:
        return False, ErrorCode.SUBSCRIPTION_EXPIRED
    return True, None


def make_fetcher(config: Config) -> Fetcher:
    http = config.ingest.http

    def _fetch(feed: FeedSource) -> bytes:
        credentials = None
        if feed.username and feed.password_enc:
            try:
                password = decrypt_feed_password(feed.id, feed.password_enc)
            except ValueError as exc:
                raise FetchError(f"feed credentials unavailable: {exc}") from exc
            credentials = Credentials(username=feed.username, password=password)
        return fetch_feed(
            feed.locator,
            feed.transport,
            credentials,
            timeout=http.timeout_seconds,
            max_retries=http.max_retries,
            backoff_seconds=http.backoff_seconds,
            user_agent=http.user_agent,
            drop_dir=config.paths.drop_dir,
        )

    return _fetch


def compute_record_key(record: ProductRecord) -> str:
    price = f"{record.price:.2f}" if record.price is not None else ""
    return sha256_hex(f"{record.title}|{record.identifier or ''}|{record.sku or ''}|{price}")


def compute_match_key(title: str, sku: str | None) -> str:
    return sha256_hex(f"{title.lower().strip()}|{sku or ''}")[:32]


def classify_health(
    indexed: int,
    quarantined: int,
    rejected: int,
    total_rows: int,
    thresholds: HealthThresholds,
) -> str:
    lane_total = quarantined + indexed
    quarantine_ratio = quarantined / lane_total if lane_total else 0.0
    reject_ratio = rejected / total_rows if total_rows else 0.0
    if reject_ratio > thresholds.reject_fail_ratio:
        return HEALTH_FAILED
    if quarantine_ratio > thresholds.quarantine_warn_ratio or reject_ratio > thresholds.reject_warn_ratio:
        return HEALTH_WARNING
    return HEALTH_HEALTHY


def run_ingestion(
    conn: Any,
    feed: FeedSource,
    run_id: str,
    *,
    fetcher: Fetcher,
    dispatcher: Dispatcher,
    config: Config,
    eligibility: Eligibility = default_eligibility,
    trigger: str = TRIGGER_SCHEDULED,
    logger: logging.Logger | None = None,
    keeper: LeaseKeeper | None = None,
) -> RunSummary:
    """Drive one run of a feed to a finalized FeedRun.

    The run must already exist in RUNNING state and the caller must hold the feed lock.
    When a keeper is given the lock is renewed throughout, and losing it raises
    LeaseLostError before anything else is written.
    """
    logger = logger or logging.getLogger("feedsentry.orchestrator")
    log_event(logger, logging.INFO, "run_started", feed_id=feed.id, run_id=run_id, trigger=trigger)

    eligible, reason = eligibility(feed, trigger)
    if not eligible:
        return _finish_skipped(conn, feed, run_id, reason or ErrorCode.SUBSCRIPTION_EXPIRED, logger)

    try:
        content = keeper.call(fetcher, feed) if keeper else fetcher(feed)
    except FetchError as exc:
        log_event(
            logger,
            logging.ERROR,
            "feed_fetch_failed",
            feed_id=feed.id,
            run_id=run_id,
            code=exc.code,
            error=str(exc),
        )
        if keeper:
            keeper.beat()
        return _finish(
            conn,
            feed,
            run_id,
            health=HEALTH_FAILED,
            tally=_failure_tally(str(exc), exc.code),
            total_rows=0,
            digest=None,
            primary_error_code=exc.code,
            dispatcher=dispatcher,
            logger=logger,
        )

    digest = sha256_hex(content)
    if feed.content_hash and digest == feed.content_hash:
        log_event(logger, logging.INFO, "feed_unchanged", feed_id=feed.id, run_id=run_id)
        health = HEALTH_HEALTHY if feed.health_status in (HEALTH_FAILED, HEALTH_PENDING) else None
        return _finish(
            conn,
            feed,
            run_id,
            health=health,
            tally=_RowTally(),
            total_rows=0,
            digest=None,
            primary_error_code=None,
            dispatcher=dispatcher,
            logger=logger,
            skip_reason=SKIP_NO_CHANGES,
        )

    try:
        parsed = parse_content(feed.format_kind, content)
    except ParseFailure as exc:
        log_event(logger, logging.ERROR, "feed_parse_failed", feed_id=feed.id, run_id=run_id, error=str(exc))
        return _finish(
            conn,
            feed,
            run_id,
            health=HEALTH_FAILED,
            tally=_failure_tally(str(exc), ErrorCode.PARSE_ERROR),
            total_rows=0,
            digest=None,
            primary_error_code=ErrorCode.PARSE_ERROR,
            dispatcher=dispatcher,
            logger=logger,
        )

    tally = _persist_rows(
        conn, feed, run_id, parsed.rows, config.ingest.max_run_errors, logger, keeper
    )
    health = classify_health(
        tally.indexed,
        tally.quarantined,
        tally.rejected,
        parsed.total_rows,
        config.ingest.thresholds,
    )
    if keeper:
        keeper.tick()
    expiry = None
    if health != HEALTH_FAILED:
        expiry = _deactivate_missing(conn, feed, run_id, config, logger)
    primary = None
    if health != HEALTH_HEALTHY and tally.codes:
        primary = tally.codes.most_common(1)[0][0]

    blocked = expiry is not None and not expiry.passed
    summary = _finish(
        conn,
        feed,
        run_id,
        health=health,
        tally=tally,
        total_rows=parsed.total_rows,
        # A blocked run must be evaluated again on the next fetch, even for identical content.
        digest=None if blocked else digest,
        primary_error_code=primary,
        dispatcher=dispatcher,
        logger=logger,
        expiry=expiry,
    )

    keys = list(dict.fromkeys(tally.record_keys))
    batches = enqueue_match_batches(conn, feed.id, run_id, keys, config.ingest.match_batch_size)
    if batches:
        log_event(logger, logging.INFO, "match_batches_enqueued", feed_id=feed.id, run_id=run_id, batches=len(batches))
    return replace(summary, match_batches=len(batches))


def _deactivate_missing(
    conn: Any,
    feed: FeedSource,
    run_id: str,
    config: Config,
    logger: logging.Logger,
) -> ExpiryCheck:
    active_before, would_expire = count_expiry_candidates(conn, feed.id, run_id)
    check = evaluate_expiry(active_before, would_expire, config.ingest.expiry_guard)
    record_expiry_check(conn, run_id, check.active_before, check.would_expire, check.blocked_reason)
    if not check.passed:
        log_event(
            logger,
            logging.WARNING,
            "expiry_blocked",
            feed_id=feed.id,
            run_id=run_id,
            reason=check.blocked_reason,
            active_before=check.active_before,
            would_expire=check.would_expire,
        )
        return check
    deactivated = deactivate_untouched_records(conn, feed.id, run_id)
    if deactivated:
        log_event(logger, logging.INFO, "records_deactivated", feed_id=feed.id, count=deactivated)
    return check


def execute_feed_job(
    conn: Any,
    job: Job,
    *,
    worker_id: str,
    config: Config,
    dispatcher: Dispatcher,
    fetcher: Fetcher | None = None,
    eligibility: Eligibility = default_eligibility,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    """Run an ingest_feed job under the per-feed lock with run binding.

    A manual job that finds the lock busy leaves manual_run_pending set on the feed;
    whoever releases the lock next enqueues the follow-up run.
    """
    logger = logger or logging.getLogger("feedsentry.orchestrator")
    feed_id = str(job.payload.get("feed_id") or "")
    trigger = str(job.payload.get("trigger") or TRIGGER_SCHEDULED)
    feed = get_feed(conn, feed_id)
    if feed is None:
        raise LookupError(f"feed not found: {feed_id}")

    lease_name = f"feed:{feed_id}"
    holder = f"{worker_id}:{job.id}"
    ttl = config.jobs.lease_ttl_seconds

    if job.run_id:
        run = get_run(conn, job.run_id)
        if run is None or run.status not in RUN_OPEN_STATUSES:
            log_event(
                logger,
                logging.INFO,
                "redelivery_noop",
                job_id=job.id,
                run_id=job.run_id,
                status=run.status if run else "missing",
            )
            return {"noop": True, "run_id": job.run_id, "status": run.status if run else None}
        if not _acquire_feed_lease(conn, feed_id, lease_name, holder, ttl, trigger, logger):
            log_event(logger, logging.INFO, "run_abandoned", job_id=job.id, run_id=job.run_id, reason=ErrorCode.LOCK_UNAVAILABLE)
            return _abandoned(trigger, run_id=job.run_id)
        run_id = job.run_id
        log_event(logger, logging.INFO, "run_resumed", job_id=job.id, run_id=run_id)
    else:
        if not _acquire_feed_lease(conn, feed_id, lease_name, holder, ttl, trigger, logger):
            log_event(logger, logging.INFO, "run_abandoned", job_id=job.id, feed_id=feed_id, reason=ErrorCode.LOCK_UNAVAILABLE)
            return _abandoned(trigger)
        try:
            run_id = create_run(conn, feed_id, trigger)
            if not bind_job_run(conn, job.id, run_id, worker_id):
                raise RunBindingError(f"could not bind run {run_id} to job {job.id}")
        except Exception:
            release_lease(conn, lease_name, holder)
            raise

    keeper = LeaseKeeper(
        conn,
        lease_name,
        holder,
        ttl,
        job_id=job.id,
        worker_id=worker_id,
        interval_seconds=min(ttl, config.jobs.lock_timeout_seconds) / 3.0,
        logger=logger,
    )
    try:
        summary = run_ingestion(
            conn,
            feed,
            run_id,
            fetcher=fetcher or make_fetcher(config),
            dispatcher=dispatcher,
            config=config,
            eligibility=eligibility,
            trigger=trigger,
            logger=logger,
            keeper=keeper,
        )
    finally:
        _release_feed_lease(conn, feed_id, lease_name, holder, run_id, config, logger)
    return {
        "run_id": summary.run_id,
        "status": summary.status,
        "indexed": summary.indexed_count,
        "quarantined": summary.quarantined_count,
        "rejected": summary.rejected_count,
        "notifications": list(summary.notifications),
    }


def run_feed_now(
    conn: Any,
    feed_id: str,
    *,
    holder: str,
    config: Config,
    dispatcher: Dispatcher,
    fetcher: Fetcher | None = None,
    logger: logging.Logger | None = None,
) -> RunSummary | None:
    """Run a feed inline as a manual trigger. Returns None when another run holds the feed lock."""
    logger = logger or logging.getLogger("feedsentry.orchestrator")
    feed = get_feed(conn, feed_id)
    if feed is None:
        raise LookupError(f"feed not found: {feed_id}")
    lease_name = f"feed:{feed_id}"
    ttl = config.jobs.lease_ttl_seconds
    if not try_acquire_lease(conn, lease_name, holder, ttl):
        log_event(logger, logging.INFO, "run_abandoned", feed_id=feed_id, reason=ErrorCode.LOCK_UNAVAILABLE)
        return None
    run_id = None
    try:
        run_id = create_run(conn, feed_id, TRIGGER_MANUAL)
        return run_ingestion(
            conn,
            feed,
            run_id,
            fetcher=fetcher or make_fetcher(config),
            dispatcher=dispatcher,
            config=config,
            trigger=TRIGGER_MANUAL,
            logger=logger,
            keeper=LeaseKeeper(conn, lease_name, holder, ttl, logger=logger),
        )
    finally:
        _release_feed_lease(conn, feed_id, lease_name, holder, run_id, config, logger)


def _acquire_feed_lease(
    conn: Any,
    feed_id: str,
    lease_name: str,
    holder: str,
    ttl: int,
    trigger: str,
    logger: logging.Logger,
) -> bool:
    if try_acquire_lease(conn, lease_name, holder, ttl):
        return True
    if trigger != TRIGGER_MANUAL:
        return False
    set_manual_run_pending(conn, feed_id)
    # The holder may have released the lock and checked the flag in between.
    if try_acquire_lease(conn, lease_name, holder, ttl):
        take_manual_run_pending(conn, feed_id)
        return True
    log_event(logger, logging.INFO, "manual_run_deferred", feed_id=feed_id)
    return False


def _release_feed_lease(
    conn: Any,
    feed_id: str,
    lease_name: str,
    holder: str,
    run_id: str | None,
    config: Config,
    logger: logging.Logger,
) -> None:
    if not release_lease(conn, lease_name, holder):
        return
    if not take_manual_run_pending(conn, feed_id):
        return
    result = enqueue_manual_followup(
        conn, feed_id, run_id or holder, max_attempts=config.jobs.max_attempts
    )
    log_event(
        logger,
        logging.INFO,
        "manual_followup_enqueued",
        feed_id=feed_id,
        after_run_id=run_id,
        job_id=result.job_id,
        created=result.created,
    )


def _abandoned(trigger: str, run_id: str | None = None) -> dict[str, object]:
    result: dict[str, object] = {"abandoned": True, "reason": ErrorCode.LOCK_UNAVAILABLE}
    if run_id:
        result["run_id"] = run_id
    if trigger == TRIGGER_MANUAL:
        result["manual_pending"] = True
    return result


def _persist_rows(
    conn: Any,
    feed: FeedSource,
    run_id: str,
    rows: list,
    max_errors: int,
    logger: logging.Logger,
    keeper: LeaseKeeper | None = None,
) -> _RowTally:
    tally = _RowTally()
    for index, result in enumerate(rows):
        if keeper:
            keeper.tick()
        record = result.record
        try:
            if isinstance(result, RowOk):
                key = compute_record_key(record)
                coercions = [asdict(item) for item in result.coercions]
                upsert_indexable_record(conn, feed.id, run_id, key, record, coercions)
                record_price_observation(
                    conn, feed.id, record.identifier, record.price, record.in_stock, run_id
                )
                resolve_quarantined_by_match_key(
                    conn, feed.id, compute_match_key(record.title, record.sku)
                )
                tally.record_keys.append(key)
                tally.indexed += 1
                tally.coercions += len(result.coercions)
            elif has_minimum_fields(record):
                blocking = [asdict(error) for error in result.errors][:MAX_BLOCKING_ERRORS]
                upsert_quarantined_record(
                    conn,
                    feed.id,
                    compute_match_key(record.title, record.sku),
                    run_id,
                    record.raw,
                    _parsed_fields(record),
                    blocking,
                )
                tally.quarantined += 1
                tally.coercions += len(result.coercions)
                tally.codes.update(error.code for error in result.errors)
            else:
                tally.rejected += 1
                tally.codes.update(error.code for error in result.errors)
                if len(tally.errors) < max_errors:
                    tally.errors.append(
                        {
                            "row": index + 1,
                            "error": "; ".join(error.message for error in result.errors),
                            "code": result.errors[0].code if result.errors else ErrorCode.PARSE_ERROR,
                        }
                    )
        except Exception as exc:  # noqa: BLE001
            conn.rollback()
            tally.rejected += 1
            tally.codes[ErrorCode.PARSE_ERROR] += 1
            if len(tally.errors) < max_errors:
                tally.errors.append({"row": index + 1, "error": str(exc), "code": ErrorCode.PARSE_ERROR})
            log_event(
                logger,
                logging.WARNING,
                "row_persist_failed",
                feed_id=feed.id,
                run_id=run_id,
                row=index + 1,
                error=str(exc),
            )
    return tally


def _finish(
    conn: Any,
    feed: FeedSource,
    run_id: str,
    *,
    health: str | None,
    tally: _RowTally,
    total_rows: int,
    digest: str | None,
    primary_error_code: str | None,
    dispatcher: Dispatcher,
    logger: logging.Logger,
    skip_reason: str | None = None,
    expiry: ExpiryCheck | None = None,
) -> RunSummary:
    """Write feed health, the failure count and the final run row, then notify.

    Each write is attempted even when an earlier one raised; the first error is
    re-raised once all of them have run.
    """
    now = utc_now()
    completed_at = isoformat_utc(now)
    run_status = RUN_STATUS_BY_HEALTH[health] if health else RUN_SUCCEEDED
    failed = health == HEALTH_FAILED
    last_error = tally.errors[0]["error"] if failed and tally.errors else None
    errors: list[Exception] = []
    fields = {"feed_id": feed.id, "run_id": run_id}

    _attempt(
        conn,
        lambda: update_feed_health(
            conn,
            feed.id,
            health_status=health,
            completed_at=completed_at,
            content_hash=None if failed else digest,
            succeeded=not failed,
            last_error=last_error,
            last_error_code=primary_error_code,
        ),
        errors,
        logger,
        "feed_health_update_failed",
        **fields,
    )
    decision: PolicyDecision | None = _attempt(
        conn,
        lambda: apply_failure_policy(
            conn, feed.id, RUN_FAILED if failed else RUN_SUCCEEDED, now, logger
        ),
        errors,
        logger,
        "failure_policy_failed",
        **fields,
    )
    finalized = _attempt(
        conn,
        lambda: finalize_run(
            conn,
            run_id,
            run_status,
            completed_at=completed_at,
            row_count=total_rows,
            indexed_count=tally.indexed,
            quarantined_count=tally.quarantined,
            rejected_count=tally.rejected,
            coercion_count=tally.coercions,
            primary_error_code=primary_error_code,
            error_codes=dict(tally.codes),
            errors=tally.errors,
            skip_reason=skip_reason,
        ),
        errors,
        logger,
        "run_finalize_failed",
        **fields,
    )
    if finalized is False:
        log_event(logger, logging.WARNING, "run_already_finalized", **fields)

    kinds = list(decision.notifications) if decision else []
    if health == HEALTH_WARNING and feed.health_status != HEALTH_WARNING:
        kinds.append(NOTIFY_WARNING)
    if (
        health == HEALTH_HEALTHY
        and feed.health_status in (HEALTH_FAILED, HEALTH_WARNING)
        and NOTIFY_RECOVERY not in kinds
    ):
        kinds.append(NOTIFY_RECOVERY)
    detail = last_error or primary_error_code
    dispatch_feed_notifications(dispatcher, feed.id, run_id, kinds, detail, logger)
    if expiry is not None and not expiry.passed:
        kinds.append(NOTIFY_EXPIRY_BLOCKED)
        dispatch_feed_notifications(
            dispatcher,
            feed.id,
            run_id,
            [NOTIFY_EXPIRY_BLOCKED],
            f"{expiry.would_expire} of {expiry.active_before} active records missing from feed",
            logger,
        )

    log_event(
        logger,
        logging.INFO,
        "run_finished",
        feed_id=feed.id,
        run_id=run_id,
        status=run_status,
        health=health or feed.health_status,
        rows=total_rows,
        indexed=tally.indexed,
        quarantined=tally.quarantined,
        rejected=tally.rejected,
    )
    if errors:
        raise errors[0]
    return RunSummary(
        run_id=run_id,
        feed_id=feed.id,
        status=run_status,
        health_status=health or feed.health_status,
        row_count=total_rows,
        indexed_count=tally.indexed,
        quarantined_count=tally.quarantined,
        rejected_count=tally.rejected,
        primary_error_code=primary_error_code,
        skip_reason=skip_reason,
        notifications=tuple(kinds),
        match_batches=0,
        expiry_blocked_reason=expiry.blocked_reason if expiry else None,
    )


def _finish_skipped(
    conn: Any,
    feed: FeedSource,
    run_id: str,
    reason: str,
    logger: logging.Logger,
) -> RunSummary:
    now = utc_now()
    completed_at = isoformat_utc(now)
    next_run_at = isoformat_utc(now + timedelta(seconds=feed.schedule_interval_seconds))
    errors: list[Exception] = []
    _attempt(
        conn,
        lambda: finalize_run(conn, run_id, RUN_SKIPPED, completed_at=completed_at, skip_reason=reason),
        errors,
        logger,
        "run_finalize_failed",
        feed_id=feed.id,
        run_id=run_id,
    )
    _attempt(
        conn,
        lambda: touch_feed_run(conn, feed.id, completed_at, next_run_at),
        errors,
        logger,
        "feed_touch_failed",
        feed_id=feed.id,
        run_id=run_id,
    )
    log_event(logger, logging.INFO, "run_skipped", feed_id=feed.id, run_id=run_id, reason=reason)
    if errors:
        raise errors[0]
    return RunSummary(
        run_id=run_id,
        feed_id=feed.id,
        status=RUN_SKIPPED,
        health_status=feed.health_status,
        row_count=0,
        indexed_count=0,
        quarantined_count=0,
        rejected_count=0,
        primary_error_code=None,
        skip_reason=reason,
        notifications=(),
        match_batches=0,
    )


def _attempt(
    conn: Any,
    step: Callable[[], Any],
    errors: list[Exception],
    logger: logging.Logger,
    event: str,
    **fields: object,
) -> Any:
    try:
        return step()
    except Exception as exc:  # noqa: BLE001
        conn.rollback()
        errors.append(exc)
        log_event(logger, logging.ERROR, event, error=str(exc), **fields)
        return None


def _failure_tally(message: str, code: str) -> _RowTally:
    tally = _RowTally()
    tally.errors.append({"row": 0, "error": message, "code": code})
    tally.codes[code] += 1
    return tally


def _parsed_fields(record: ProductRecord) -> dict[str, object]:
    return {
        "title": record.title,
        "price": record.price,
        "identifier": record.identifier,
        "sku": record.sku,
        "in_stock": record.in_stock,
        "url": record.url,
        "brand": record.brand,
    }
