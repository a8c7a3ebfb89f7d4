from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import AlertsConfig
from .models import ALERT_RULE_TYPES, BACK_IN_STOCK, PRICE_DROP, AlertSubscription
from .notifications import Dispatcher
from .storage import (
    commit_alert_target,
    ensure_alert_target,
    get_alert_target,
    get_indexable_record,
    list_active_subscriptions,
    list_price_observations,
    release_alert_target,
    try_claim_alert_target,
)
from .utils import isoformat_utc, log_event, utc_now

CLAIM_STALE_SECONDS = 5 * 60
COOLDOWN_SECONDS = 7 * 24 * 3600

REASON_IN_COOLDOWN = "in_cooldown"
REASON_ALREADY_CLAIMED = "already_claimed"

DELIVERED = "delivered"
SEND_FAILED = "send_failed"
COMMIT_LOST = "commit_lost"


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    reason: str | None = None


def new_claim_key() -> str:
    return uuid.uuid4().hex


def claim_alert(
    conn: Any,
    subscription_id: str,
    rule_type: str,
    claim_key: str,
    now: datetime | None = None,
    *,
    stale_seconds: int = CLAIM_STALE_SECONDS,
    cooldown_seconds: int = COOLDOWN_SECONDS,
) -> ClaimResult:
    """Reserve the right to send one notification for a (subscription, rule) slot.

    The reservation is a single conditional UPDATE. When it matches no row the slot is
    re-read only to report why.
    """
    if rule_type not in ALERT_RULE_TYPES:
        raise ValueError(f"unknown rule type: {rule_type}")
    now = now or utc_now()
    cooldown_cutoff = isoformat_utc(now - timedelta(seconds=cooldown_seconds))
    stale_cutoff = isoformat_utc(now - timedelta(seconds=stale_seconds))
    ensure_alert_target(conn, subscription_id, rule_type)
    if try_claim_alert_target(
        conn,
        subscription_id,
        rule_type,
        claim_key,
        isoformat_utc(now),
        cooldown_cutoff,
        stale_cutoff,
    ):
        return ClaimResult(claimed=True)
    target = get_alert_target(conn, subscription_id, rule_type)
    if target and target.last_notified_at and target.last_notified_at > cooldown_cutoff:
        return ClaimResult(claimed=False, reason=REASON_IN_COOLDOWN)
    return ClaimResult(claimed=False, reason=REASON_ALREADY_CLAIMED)


def commit_alert(
    conn: Any,
    subscription_id: str,
    rule_type: str,
    claim_key: str,
    now: datetime | None = None,
) -> bool:
    now = now or utc_now()
    return commit_alert_target(conn, subscription_id, rule_type, claim_key, isoformat_utc(now))


def release_alert(conn: Any, subscription_id: str, rule_type: str, claim_key: str) -> bool:
    return release_alert_target(conn, subscription_id, rule_type, claim_key)


def deliver_alert(
    conn: Any,
    subscription: AlertSubscription,
    rule_type: str,
    message: dict[str, Any],
    dispatcher: Dispatcher,
    now: datetime | None = None,
    *,
    settings: AlertsConfig | None = None,
    logger: logging.Logger | None = None,
) -> str:
    """Claim, send, then commit or release. Returns the delivery outcome."""
    logger = logger or logging.getLogger("feedsentry.alerts")
    stale = settings.claim_stale_seconds if settings else CLAIM_STALE_SECONDS
    cooldown = settings.cooldown_seconds if settings else COOLDOWN_SECONDS
    claim_key = new_claim_key()
    claim = claim_alert(
        conn,
        subscription.id,
        rule_type,
        claim_key,
        now,
        stale_seconds=stale,
        cooldown_seconds=cooldown,
    )
    if not claim.claimed:
        log_event(
            logger,
            logging.DEBUG,
            "alert_claim_rejected",
            subscription_id=subscription.id,
            rule_type=rule_type,
            reason=claim.reason,
        )
        return str(claim.reason)

    try:
        sent = dispatcher.send(subscription.channel, {"kind": rule_type, **message})
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "alert_send_failed",
            subscription_id=subscription.id,
            rule_type=rule_type,
            error=str(exc),
        )
        sent = False

    if not sent:
        release_alert(conn, subscription.id, rule_type, claim_key)
        return SEND_FAILED
    if not commit_alert(conn, subscription.id, rule_type, claim_key, now):
        log_event(
            logger,
            logging.WARNING,
            "alert_commit_lost",
            subscription_id=subscription.id,
            rule_type=rule_type,
        )
        return COMMIT_LOST
    log_event(
        logger,
        logging.INFO,
        "alert_delivered",
        subscription_id=subscription.id,
        rule_type=rule_type,
    )
    return DELIVERED


def evaluate_price_change(
    old: dict[str, Any] | None,
    new: dict[str, Any],
    target_price: float | None = None,
) -> list[str]:
    """Return the rule types triggered by moving from ``old`` to ``new`` observations."""
    if old is None:
        return []
    rules: list[str] = []
    old_price = old.get("price")
    new_price = new.get("price")
    if old_price and new_price and new_price < old_price:
        if target_price is None or new_price <= target_price:
            rules.append(PRICE_DROP)
    if new.get("in_stock") is True and old.get("in_stock") is False:
        rules.append(BACK_IN_STOCK)
    return rules


def process_match_batch(
    conn: Any,
    payload: dict[str, Any],
    dispatcher: Dispatcher,
    settings: AlertsConfig | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, int]:
    logger = logger or logging.getLogger("feedsentry.alerts")
    feed_id = str(payload.get("feed_id") or "")
    run_id = payload.get("run_id")
    outcomes: dict[str, int] = {}
    evaluated = 0
    for record_key in payload.get("record_keys") or []:
        record = get_indexable_record(conn, feed_id, record_key)
        if not record or not record["is_active"]:
            continue
        observations = list_price_observations(conn, feed_id, str(record["identifier"]), limit=2)
        if len(observations) < 2 or observations[0]["run_id"] != run_id:
            continue
        evaluated += 1
        new, old = observations[0], observations[1]
        for subscription in list_active_subscriptions(conn, str(record["identifier"])):
            for rule_type in evaluate_price_change(old, new, subscription.target_price):
                outcome = deliver_alert(
                    conn,
                    subscription,
                    rule_type,
                    {
                        "subscription_id": subscription.id,
                        "identifier": record["identifier"],
                        "title": record["title"],
                        "url": record["url"],
                        "old_price": old["price"],
                        "new_price": new["price"],
                        "in_stock": new["in_stock"],
                    },
                    dispatcher,
                    settings=settings,
                    logger=logger,
                )
                outcomes[outcome] = outcomes.get(outcome, 0) + 1
    log_event(
        logger,
        logging.INFO,
        "match_batch_processed",
        feed_id=feed_id,
        run_id=run_id,
        evaluated=evaluated,
        delivered=outcomes.get(DELIVERED, 0),
    )
    return {"evaluated": evaluated, **outcomes}
