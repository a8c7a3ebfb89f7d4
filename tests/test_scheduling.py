import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import add_feed
from feedsentry.models import FEED_DISABLED, FEED_DRAFT
from feedsentry.scheduling import (
    FEED_WINDOW_SECONDS,
    JOB_INGEST_FEED,
    JOB_PRUNE_JOBS,
    enqueue_manual_run,
    enqueue_match_batches,
    run_scheduler_tick,
    schedule_due_feeds,
    window_start,
    windowed_job_key,
)
from feedsentry.storage import enqueue_job, init_db, list_jobs, set_feed_status

NOW = datetime(2024, 3, 1, 12, 2, 30, tzinfo=timezone.utc)


def test_window_start_floors_to_window():
    assert window_start(NOW, 300) == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        window_start(NOW, 0)


def test_windowed_key_same_window_same_key():
    later = NOW + timedelta(seconds=60)
    assert windowed_job_key("ingest_feed", "acme", NOW, 300) == windowed_job_key(
        "ingest_feed", "acme", later, 300
    )


def test_windowed_key_differs_by_subject_and_window():
    next_window = NOW + timedelta(seconds=FEED_WINDOW_SECONDS)
    base = windowed_job_key("ingest_feed", "acme", NOW, FEED_WINDOW_SECONDS)
    assert base != windowed_job_key("ingest_feed", "globex", NOW, FEED_WINDOW_SECONDS)
    assert base != windowed_job_key("ingest_feed", "acme", next_window, FEED_WINDOW_SECONDS)


def test_schedule_due_feeds_dedupes_within_window(conn):
    add_feed(conn, "acme")
    add_feed(conn, "globex")

    first = schedule_due_feeds(conn, NOW)
    second = schedule_due_feeds(conn, NOW + timedelta(seconds=30))

    assert first == {"due": 2, "enqueued": 2, "deduplicated": 0}
    assert second == {"due": 2, "enqueued": 0, "deduplicated": 2}
    assert len(list_jobs(conn, status="queued")) == 2


def test_schedule_due_feeds_next_window_enqueues_again(conn):
    add_feed(conn, "acme")
    schedule_due_feeds(conn, NOW)
    result = schedule_due_feeds(conn, NOW + timedelta(seconds=FEED_WINDOW_SECONDS))
    assert result["enqueued"] == 1


def test_schedule_skips_disabled_draft_and_future_feeds(conn):
    add_feed(conn, "acme")
    add_feed(conn, "off")
    add_feed(conn, "draft", status=FEED_DRAFT)
    set_feed_status(conn, "off", FEED_DISABLED)
    add_feed(conn, "later")
    conn.execute(
        "UPDATE feed_sources SET next_run_at = ? WHERE id = ?",
        ("2099-01-01T00:00:00.000000+00:00", "later"),
    )
    conn.commit()

    result = schedule_due_feeds(conn, NOW)

    assert result["due"] == 1
    jobs = list_jobs(conn)
    assert [job.payload["feed_id"] for job in jobs] == ["acme"]


def test_concurrent_scheduling_passes_enqueue_once(db_path):
    setup = init_db(db_path)
    add_feed(setup, "acme")
    setup.close()

    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    errors = []

    def _pass():
        local = init_db(db_path)
        try:
            barrier.wait()
            results.append(
                enqueue_job(
                    local,
                    JOB_INGEST_FEED,
                    {"feed_id": "acme"},
                    job_key=windowed_job_key(JOB_INGEST_FEED, "acme", NOW, FEED_WINDOW_SECONDS),
                )
            )
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=_pass) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sum(1 for result in results if result.created) == 1
    assert len({result.job_id for result in results}) == 1
    check = init_db(db_path)
    assert len(list_jobs(check)) == 1
    check.close()


def test_manual_run_is_prioritized_and_deduped(conn):
    add_feed(conn, "acme")
    first = enqueue_manual_run(conn, "acme", NOW)
    second = enqueue_manual_run(conn, "acme", NOW + timedelta(seconds=10))

    assert first.created is True
    assert second.created is False
    assert second.job_id == first.job_id
    job = list_jobs(conn)[0]
    assert job.priority > 0
    assert job.payload == {"feed_id": "acme", "trigger": "manual"}


def test_manual_run_unknown_feed(conn):
    with pytest.raises(LookupError):
        enqueue_manual_run(conn, "missing", NOW)


def test_match_batches_are_keyed_by_run_and_index(conn):
    keys = [f"key-{i}" for i in range(5)]
    first = enqueue_match_batches(conn, "acme", "run_1", keys, 2)
    again = enqueue_match_batches(conn, "acme", "run_1", keys, 2)

    assert len(first) == 3
    assert all(result.created for result in first)
    assert not any(result.created for result in again)
    payloads = sorted((job.payload for job in list_jobs(conn)), key=lambda p: p["record_keys"][0])
    assert [p["record_keys"] for p in payloads] == [["key-0", "key-1"], ["key-2", "key-3"], ["key-4"]]


def test_scheduler_tick_adds_maintenance_once(conn):
    add_feed(conn, "acme")
    first = run_scheduler_tick(conn, NOW)
    second = run_scheduler_tick(conn, NOW + timedelta(seconds=5))

    assert first["maintenance_enqueued"] is True
    assert second["maintenance_enqueued"] is False
    types = sorted(job.job_type for job in list_jobs(conn))
    assert types == [JOB_INGEST_FEED, JOB_PRUNE_JOBS]
