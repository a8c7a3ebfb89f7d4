from __future__ import annotations

import logging
from typing import Any, Protocol

from .models import (
    NOTIFY_AUTO_DISABLED,
    NOTIFY_EXPIRY_BLOCKED,
    NOTIFY_RECOVERY,
    NOTIFY_RUN_FAILED,
    NOTIFY_WARNING,
)
from .storage import record_health_alert
from .utils import log_event

HEALTH_KINDS = (
    NOTIFY_RUN_FAILED,
    NOTIFY_AUTO_DISABLED,
    NOTIFY_RECOVERY,
    NOTIFY_WARNING,
    NOTIFY_EXPIRY_BLOCKED,
)
OPS_CHANNEL = "ops"
_RESERVED_FIELDS = ("kind", "channel", "event", "logger", "level")


class Dispatcher(Protocol):
    def send(self, channel: str, message: dict[str, Any]) -> bool:
        ...


class LoggingDispatcher:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger("feedsentry.notifications")

    def send(self, channel: str, message: dict[str, Any]) -> bool:
        fields = {key: value for key, value in message.items() if key not in _RESERVED_FIELDS}
        log_event(
            self.logger,
            logging.INFO,
            "notification",
            channel=channel,
            kind=message.get("kind"),
            **fields,
        )
        return True


class HealthAlertDispatcher:
    """Records feed health notifications in health_alerts, then forwards every message."""

    def __init__(self, conn: Any, inner: Dispatcher | None = None) -> None:
        self.conn = conn
        self.inner = inner or LoggingDispatcher()

    def send(self, channel: str, message: dict[str, Any]) -> bool:
        kind = str(message.get("kind") or "")
        if kind in HEALTH_KINDS:
            record_health_alert(
                self.conn,
                message.get("feed_id"),
                kind,
                str(message.get("detail") or kind),
            )
        return self.inner.send(channel, message)


def dispatch_feed_notifications(
    dispatcher: Dispatcher,
    feed_id: str,
    run_id: str | None,
    kinds: list[str],
    detail: str | None,
    logger: logging.Logger,
) -> list[str]:
    """Send each feed notification once; failures are logged and never raised."""
    delivered: list[str] = []
    for kind in kinds:
        message = {"kind": kind, "feed_id": feed_id, "run_id": run_id, "detail": detail or kind}
        try:
            ok = dispatcher.send(OPS_CHANNEL, message)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.ERROR,
                "notification_failed",
                feed_id=feed_id,
                kind=kind,
                error=str(exc),
            )
            continue
        if ok:
            delivered.append(kind)
        else:
            log_event(logger, logging.WARNING, "notification_rejected", feed_id=feed_id, kind=kind)
    return delivered
