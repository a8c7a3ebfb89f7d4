from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .models import (
    NOTIFY_AUTO_DISABLED,
    NOTIFY_RECOVERY,
    NOTIFY_RUN_FAILED,
    RUN_FAILED,
    RUN_SUCCEEDED,
)
from .storage import get_feed, swap_failure_count
from .utils import isoformat_utc, log_event

THRESHOLD = 3
OUTCOMES = (RUN_SUCCEEDED, RUN_FAILED)
_MAX_SWAP_ATTEMPTS = 10


@dataclass(frozen=True)
class PolicyDecision:
    new_failures: int
    auto_disabled: bool
    next_run_at: datetime | None
    notifications: tuple[str, ...]


def evaluate(
    prior_failures: int,
    outcome: str,
    schedule_interval: timedelta,
    now: datetime,
) -> PolicyDecision:
    """Compute the next failure count, schedule and notifications for one run outcome.

    SUCCEEDED resets the count and emits RECOVERY only when there were prior failures.
    FAILED increments it and emits RUN_FAILED; reaching THRESHOLD disables the feed,
    clears the next run and adds AUTO_DISABLED.
    """
    if prior_failures < 0:
        raise ValueError("prior_failures must be >= 0")
    if outcome == RUN_SUCCEEDED:
        notifications = (NOTIFY_RECOVERY,) if prior_failures > 0 else ()
        return PolicyDecision(
            new_failures=0,
            auto_disabled=False,
            next_run_at=now + schedule_interval,
            notifications=notifications,
        )
    if outcome == RUN_FAILED:
        new_failures = prior_failures + 1
        if new_failures >= THRESHOLD:
            return PolicyDecision(
                new_failures=new_failures,
                auto_disabled=True,
                next_run_at=None,
                notifications=(NOTIFY_RUN_FAILED, NOTIFY_AUTO_DISABLED),
            )
        return PolicyDecision(
            new_failures=new_failures,
            auto_disabled=False,
            next_run_at=now + schedule_interval,
            notifications=(NOTIFY_RUN_FAILED,),
        )
    raise ValueError(f"unsupported outcome: {outcome}")


def apply_failure_policy(
    conn: Any,
    feed_id: str,
    outcome: str,
    now: datetime,
    logger: logging.Logger | None = None,
) -> PolicyDecision:
    logger = logger or logging.getLogger("feedsentry.failure_policy")
    for _ in range(_MAX_SWAP_ATTEMPTS):
        feed = get_feed(conn, feed_id)
        if feed is None:
            raise LookupError(f"feed not found: {feed_id}")
        decision = evaluate(
            feed.consecutive_failure_count,
            outcome,
            timedelta(seconds=feed.schedule_interval_seconds),
            now,
        )
        swapped = swap_failure_count(
            conn,
            feed_id,
            expected=feed.consecutive_failure_count,
            new_count=decision.new_failures,
            next_run_at=isoformat_utc(decision.next_run_at) if decision.next_run_at else None,
            disable=decision.auto_disabled,
        )
        if swapped:
            log_event(
                logger,
                logging.INFO,
                "failure_policy_applied",
                feed_id=feed_id,
                outcome=outcome,
                failures=decision.new_failures,
                auto_disabled=decision.auto_disabled,
            )
            if decision.auto_disabled:
                log_event(
                    logger,
                    logging.WARNING,
                    "feed_auto_disabled",
                    feed_id=feed_id,
                    failures=decision.new_failures,
                )
            return decision
        log_event(logger, logging.DEBUG, "failure_count_contended", feed_id=feed_id)
    raise RuntimeError(f"failure count for {feed_id} kept changing underneath the update")
