from datetime import datetime, timedelta, timezone

import pytest

from conftest import add_feed
from feedsentry.failure_policy import THRESHOLD, apply_failure_policy, evaluate
from feedsentry.models import FEED_DISABLED, RUN_FAILED, RUN_SUCCEEDED
from feedsentry.services.feeds_service import set_feed_enabled
from feedsentry.storage import get_feed
from feedsentry.utils import isoformat_utc

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
DAY = timedelta(hours=24)


def test_mixed_outcomes_reset_and_recover():
    outcomes = [RUN_SUCCEEDED, RUN_FAILED, RUN_SUCCEEDED, RUN_FAILED, RUN_FAILED, RUN_SUCCEEDED]
    count = 0
    counts = []
    recovery_events = []
    for index, outcome in enumerate(outcomes, start=1):
        decision = evaluate(count, outcome, DAY, NOW)
        count = decision.new_failures
        counts.append(count)
        assert decision.auto_disabled is False
        if "RECOVERY" in decision.notifications:
            recovery_events.append(index)

    assert counts == [0, 1, 0, 1, 2, 0]
    assert recovery_events == [3, 6]


def test_three_failures_disable_feed():
    count = 0
    emitted = []
    next_runs = []
    for _ in range(3):
        decision = evaluate(count, RUN_FAILED, DAY, NOW)
        count = decision.new_failures
        emitted.append(list(decision.notifications))
        next_runs.append(decision.next_run_at)

    assert emitted == [["RUN_FAILED"], ["RUN_FAILED"], ["RUN_FAILED", "AUTO_DISABLED"]]
    assert next_runs[:2] == [NOW + DAY, NOW + DAY]
    assert next_runs[2] is None


def test_disabled_stays_true_while_count_climbs():
    count = 0
    flags = []
    for _ in range(6):
        decision = evaluate(count, RUN_FAILED, DAY, NOW)
        count = decision.new_failures
        flags.append(decision.auto_disabled)
    assert count == 6
    assert flags == [False, False, True, True, True, True]
    assert flags.index(True) + 1 == THRESHOLD


def test_first_success_never_recovers():
    decision = evaluate(0, RUN_SUCCEEDED, DAY, NOW)
    assert decision.notifications == ()
    assert decision.next_run_at == NOW + DAY


def test_success_resets_any_prior_count():
    decision = evaluate(17, RUN_SUCCEEDED, timedelta(minutes=30), NOW)
    assert decision.new_failures == 0
    assert decision.notifications == ("RECOVERY",)
    assert decision.next_run_at == NOW + timedelta(minutes=30)


def test_evaluate_rejects_bad_input():
    with pytest.raises(ValueError):
        evaluate(-1, RUN_FAILED, DAY, NOW)
    with pytest.raises(ValueError):
        evaluate(0, "WARNING", DAY, NOW)


def test_apply_persists_counter_and_disables(conn):
    add_feed(conn, "acme")
    for _ in range(3):
        decision = apply_failure_policy(conn, "acme", RUN_FAILED, NOW)

    feed = get_feed(conn, "acme")
    assert decision.auto_disabled is True
    assert feed.consecutive_failure_count == 3
    assert feed.status == FEED_DISABLED
    assert feed.next_run_at is None


def test_apply_success_schedules_next_run(conn):
    add_feed(conn, "acme", schedule_interval_seconds=3600)
    apply_failure_policy(conn, "acme", RUN_FAILED, NOW)
    apply_failure_policy(conn, "acme", RUN_SUCCEEDED, NOW)

    feed = get_feed(conn, "acme")
    assert feed.consecutive_failure_count == 0
    assert feed.next_run_at == isoformat_utc(NOW + timedelta(hours=1))


def test_apply_unknown_feed(conn):
    with pytest.raises(LookupError):
        apply_failure_policy(conn, "missing", RUN_FAILED, NOW)


def test_manual_enable_resets_failure_count(conn):
    add_feed(conn, "acme")
    for _ in range(3):
        apply_failure_policy(conn, "acme", RUN_FAILED, NOW)

    set_feed_enabled(conn, "acme", True)

    feed = get_feed(conn, "acme")
    assert feed.status == "ENABLED"
    assert feed.consecutive_failure_count == 0
    assert feed.next_run_at is not None
