from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .errors import StatusConflictError, ValidationFailedError
from .quarantine import bulk_dismiss, bulk_reprocess, dismiss_record, request_reprocess
from .scheduling import enqueue_manual_run
from .services.feeds_service import (
    create_feed,
    get_feed_dict,
    list_feed_dicts,
    reset_feed_content,
    set_feed_enabled,
    update_feed,
)
from .storage import (
    count_active_records,
    count_jobs_by_status,
    create_subscription,
    enqueue_job,
    get_job,
    get_quarantined_record,
    get_run,
    get_subscription,
    init_db,
    list_health_alerts,
    list_jobs,
    list_quarantine_audit,
    list_quarantined_records,
    list_runs,
)
from .utils import configure_logging, log_event

app = FastAPI(title="FeedSentry Admin API")

ADMIN_COOKIE_NAME = "fs_admin_token"


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("FS_ADMIN_TOKEN")
    if not token:
        return
    if not _is_authorized(request, token):
        raise HTTPException(status_code=401, detail="unauthorized")


def _is_authorized(request: Request, token: str) -> bool:
    header = request.headers.get("X-Admin-Token")
    if header and header == token:
        return True
    cookie = request.cookies.get(ADMIN_COOKIE_NAME)
    return cookie == token


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, StatusConflictError):
        return HTTPException(
            status_code=409,
            detail={"error": exc.code, "message": str(exc), "status": exc.current_status},
        )
    if isinstance(exc, ValidationFailedError):
        return HTTPException(status_code=400, detail={"error": exc.code, "message": str(exc)})
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


class RuntimeConfigRequest(BaseModel):
    config: dict


class FeedRequest(BaseModel):
    id: str | None = None
    name: str | None = None
    format_kind: str | None = None
    transport: str | None = None
    locator: str | None = None
    username: str | None = None
    password: str | None = None
    schedule_interval_minutes: int | None = None
    status: str | None = None
    eligible: bool | None = None


class DismissRequest(BaseModel):
    note: str | None = None
    actor: str | None = None


class BulkDismissRequest(BaseModel):
    ids: list[str]
    note: str | None = None
    actor: str | None = None


class ReprocessRequest(BaseModel):
    actor: str | None = None


class BulkReprocessRequest(BaseModel):
    ids: list[str]
    actor: str | None = None


class JobRequest(BaseModel):
    job_type: str
    payload: dict[str, Any] | None = None
    job_key: str | None = None


class SubscriptionRequest(BaseModel):
    identifier: str
    channel: str
    target_price: float | None = None


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "FeedSentry Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    conn = _get_conn()
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
        "jobs": count_jobs_by_status(conn),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.get("/feeds")
def feeds_list(status: str | None = None) -> list[dict[str, object]]:
    conn = _get_conn()
    feeds = list_feed_dicts(conn, status=status)
    for feed in feeds:
        feed["active_records"] = count_active_records(conn, str(feed["id"]))
    return feeds


@app.post("/feeds")
def feeds_create(payload: FeedRequest, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    try:
        return create_feed(conn, payload.model_dump(exclude_none=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/feeds/{feed_id}")
def feeds_read(feed_id: str) -> dict[str, object]:
    conn = _get_conn()
    feed = get_feed_dict(conn, feed_id)
    if not feed:
        raise HTTPException(status_code=404, detail="feed_not_found")
    return feed


@app.put("/feeds/{feed_id}")
@app.patch("/feeds/{feed_id}")
def feeds_update(
    feed_id: str,
    payload: FeedRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return update_feed(conn, feed_id, payload.model_dump(exclude_unset=True))
    except (LookupError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.post("/feeds/{feed_id}/enable")
def feeds_enable(feed_id: str, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    try:
        feed = set_feed_enabled(conn, feed_id, True)
    except LookupError as exc:
        raise _http_error(exc) from exc
    log_event(_logger(), logging.INFO, "feed_enabled", feed_id=feed_id)
    return feed


@app.post("/feeds/{feed_id}/disable")
def feeds_disable(feed_id: str, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    try:
        feed = set_feed_enabled(conn, feed_id, False)
    except LookupError as exc:
        raise _http_error(exc) from exc
    log_event(_logger(), logging.INFO, "feed_disabled", feed_id=feed_id)
    return feed


@app.post("/feeds/{feed_id}/reset-hash")
def feeds_reset_hash(feed_id: str, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    try:
        feed = reset_feed_content(conn, feed_id)
    except LookupError as exc:
        raise _http_error(exc) from exc
    log_event(_logger(), logging.INFO, "feed_hash_reset", feed_id=feed_id)
    return feed


@app.post("/feeds/{feed_id}/run")
def feeds_run(feed_id: str, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    config = _load_config(conn)
    try:
        result = enqueue_manual_run(conn, feed_id, max_attempts=config.jobs.max_attempts)
    except LookupError as exc:
        raise _http_error(exc) from exc
    log_event(
        _logger(),
        logging.INFO,
        "manual_run_enqueued",
        feed_id=feed_id,
        job_id=result.job_id,
        created=result.created,
    )
    return {"job_id": result.job_id, "created": result.created}


@app.get("/feeds/{feed_id}/runs")
def feeds_runs(feed_id: str, limit: int = 50) -> list[dict[str, object]]:
    conn = _get_conn()
    return [asdict(run) for run in list_runs(conn, feed_id=feed_id, limit=limit)]


@app.get("/feeds/{feed_id}/alerts")
def feeds_health_alerts(feed_id: str, limit: int = 50) -> list[dict[str, object]]:
    conn = _get_conn()
    return list_health_alerts(conn, feed_id=feed_id, limit=limit)


@app.get("/runs/{run_id}")
def runs_read(run_id: str) -> dict[str, object]:
    conn = _get_conn()
    run = get_run(conn, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="run_not_found")
    return asdict(run)


@app.get("/quarantine")
def quarantine_list(
    feed_id: str | None = None,
    status: str | None = "QUARANTINED",
    limit: int = 100,
) -> list[dict[str, object]]:
    conn = _get_conn()
    records = list_quarantined_records(conn, status=status or None, feed_id=feed_id, limit=limit)
    return [asdict(record) for record in records]


@app.get("/quarantine/{record_id}")
def quarantine_read(record_id: str) -> dict[str, object]:
    conn = _get_conn()
    record = get_quarantined_record(conn, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="record_not_found")
    return {**asdict(record), "audit": list_quarantine_audit(conn, record_id)}


@app.post("/quarantine/{record_id}/dismiss")
def quarantine_dismiss(
    record_id: str,
    payload: DismissRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    try:
        result = dismiss_record(conn, record_id, payload.note, actor=payload.actor)
    except (StatusConflictError, ValidationFailedError, LookupError) as exc:
        raise _http_error(exc) from exc
    return asdict(result)


@app.post("/quarantine/bulk-dismiss")
def quarantine_bulk_dismiss(
    payload: BulkDismissRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    try:
        outcomes = bulk_dismiss(conn, payload.ids, payload.note, actor=payload.actor)
    except ValidationFailedError as exc:
        raise _http_error(exc) from exc
    return {"results": outcomes}


@app.post("/quarantine/{record_id}/reprocess")
def quarantine_reprocess(
    record_id: str,
    payload: ReprocessRequest | None = None,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    actor = payload.actor if payload else None
    try:
        return request_reprocess(conn, record_id, actor=actor)
    except (StatusConflictError, LookupError) as exc:
        raise _http_error(exc) from exc


@app.post("/quarantine/bulk-reprocess")
def quarantine_bulk_reprocess(
    payload: BulkReprocessRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    try:
        results = bulk_reprocess(conn, payload.ids, actor=payload.actor)
    except ValidationFailedError as exc:
        raise _http_error(exc) from exc
    return {"results": results}


@app.post("/jobs/enqueue")
def jobs_enqueue(job: JobRequest, _: None = Depends(_require_admin_token)) -> dict[str, object]:
    conn = _get_conn()
    result = enqueue_job(conn, job.job_type, job.payload, job_key=job.job_key)
    log_event(
        _logger(),
        logging.INFO,
        "job_enqueued",
        job_id=result.job_id,
        job_type=job.job_type,
        created=result.created,
    )
    return {"job_id": result.job_id, "created": result.created}


@app.get("/jobs")
def jobs(limit: int = 20, status: str | None = None) -> list[dict[str, object]]:
    conn = _get_conn()
    rows = []
    for job in list_jobs(conn, limit=limit, status=status):
        rows.append(
            {
                "id": job.id,
                "job_type": job.job_type,
                "job_key": job.job_key,
                "status": job.status,
                "attempts": job.attempts,
                "run_id": job.run_id,
                "requested_at": job.requested_at,
                "started_at": job.started_at or "",
                "finished_at": job.finished_at or "",
                "error": job.error or "",
                "result": job.result or {},
            }
        )
    return rows


@app.get("/jobs/{job_id}")
def jobs_read(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    job = get_job(conn, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job_not_found")
    return asdict(job)


@app.post("/subscriptions")
def subscriptions_create(
    payload: SubscriptionRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    identifier = payload.identifier.strip()
    channel = payload.channel.strip()
    if not identifier or not channel:
        raise HTTPException(status_code=400, detail="identifier and channel are required")
    conn = _get_conn()
    subscription_id = create_subscription(conn, identifier, channel, payload.target_price)
    subscription = get_subscription(conn, subscription_id)
    return asdict(subscription) if subscription else {"id": subscription_id}


@app.get("/subscriptions/{subscription_id}")
def subscriptions_read(subscription_id: str) -> dict[str, object]:
    conn = _get_conn()
    subscription = get_subscription(conn, subscription_id)
    if not subscription:
        raise HTTPException(status_code=404, detail="subscription_not_found")
    return asdict(subscription)


def _setup_logging() -> None:
    configure_logging("feedsentry.admin")


_setup_logging()


def _logger() -> logging.Logger:
    return logging.getLogger("feedsentry.admin")


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("feedsentry")
    except Exception:  # noqa: BLE001
        return "unknown"


def _load_config(conn: Any):
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _get_conn() -> Any:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn
