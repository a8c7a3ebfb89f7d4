from __future__ import annotations

from dataclasses import dataclass, field

# Feed enablement
FEED_ENABLED = "ENABLED"
FEED_DISABLED = "DISABLED"
FEED_DRAFT = "DRAFT"

# Feed health
HEALTH_PENDING = "PENDING"
HEALTH_HEALTHY = "HEALTHY"
HEALTH_WARNING = "WARNING"
HEALTH_FAILED = "FAILED"

# Run status
RUN_PENDING = "PENDING"
RUN_RUNNING = "RUNNING"
RUN_SUCCEEDED = "SUCCEEDED"
RUN_FAILED = "FAILED"
RUN_SKIPPED = "SKIPPED"
RUN_WARNING = "WARNING"
RUN_OPEN_STATUSES = (RUN_PENDING, RUN_RUNNING)

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"

# Quarantine
QUARANTINED = "QUARANTINED"
RESOLVED = "RESOLVED"
DISMISSED = "DISMISSED"

# Alert rules
PRICE_DROP = "PRICE_DROP"
BACK_IN_STOCK = "BACK_IN_STOCK"
ALERT_RULE_TYPES = (PRICE_DROP, BACK_IN_STOCK)

# Notification kinds
NOTIFY_RUN_FAILED = "RUN_FAILED"
NOTIFY_AUTO_DISABLED = "AUTO_DISABLED"
NOTIFY_RECOVERY = "RECOVERY"
NOTIFY_WARNING = "WARNING"
NOTIFY_EXPIRY_BLOCKED = "EXPIRY_BLOCKED"

FORMAT_KINDS = ("GENERIC", "CSV", "JSON", "RSS")
TRANSPORTS = ("HTTP", "AUTH_URL", "FILE")


@dataclass(frozen=True)
class FeedSource:
    id: str
    name: str
    format_kind: str
    transport: str
    locator: str
    username: str | None
    password_enc: str | None
    password_key_id: str | None
    schedule_interval_seconds: int
    status: str
    health_status: str
    consecutive_failure_count: int
    content_hash: str | None
    eligible: bool
    last_run_at: str | None
    last_success_at: str | None
    last_failure_at: str | None
    last_error: str | None
    last_error_code: str | None
    next_run_at: str | None
    manual_run_pending: bool = False


@dataclass(frozen=True)
class FeedRun:
    id: str
    feed_id: str
    trigger: str
    status: str
    started_at: str
    completed_at: str | None
    row_count: int
    indexed_count: int
    quarantined_count: int
    rejected_count: int
    coercion_count: int
    primary_error_code: str | None
    error_codes: dict[str, int]
    errors: list[dict[str, object]]
    skip_reason: str | None
    active_before: int = 0
    would_expire_count: int = 0
    expiry_blocked_reason: str | None = None


@dataclass(frozen=True)
class ProductRecord:
    """A feed row mapped onto the normalized product fields."""

    row_index: int
    title: str
    price: float | None
    identifier: str | None
    sku: str | None
    in_stock: bool | None
    url: str | None
    brand: str | None
    raw: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class RowError:
    field: str
    code: str
    message: str
    raw_value: object = None


@dataclass(frozen=True)
class Coercion:
    field: str
    raw_value: object
    coerced_value: object
    note: str


@dataclass(frozen=True)
class RowOk:
    record: ProductRecord
    coercions: list[Coercion]


@dataclass(frozen=True)
class RowErr:
    record: ProductRecord | None
    errors: list[RowError]
    coercions: list[Coercion] = field(default_factory=list)


@dataclass(frozen=True)
class ParseResult:
    connector: str
    total_rows: int
    rows: list[RowOk | RowErr]
    error_codes: dict[str, int]


@dataclass(frozen=True)
class QuarantinedRecord:
    id: str
    feed_id: str
    match_key: str
    run_id: str | None
    raw: dict[str, object]
    parsed: dict[str, object]
    blocking_errors: list[dict[str, object]]
    status: str
    dismiss_note: str | None
    dismissed_by: str | None
    dismissed_at: str | None
    resolved_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class AlertSubscription:
    id: str
    identifier: str
    channel: str
    target_price: float | None
    is_active: bool


@dataclass(frozen=True)
class AlertTarget:
    subscription_id: str
    rule_type: str
    last_notified_at: str | None
    claim_key: str | None
    claimed_at: str | None


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    job_key: str | None
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    priority: int
    requested_at: str
    available_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    attempts: int
    max_attempts: int
    run_id: str | None
    error: str | None


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    created: bool
