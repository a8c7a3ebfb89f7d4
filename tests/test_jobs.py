from feedsentry.scheduling import enqueue_manual_run
from feedsentry.storage import (
    claim_next_job,
    complete_job,
    count_jobs_by_status,
    enqueue_job,
    fail_job,
    get_job,
    init_db,
    list_jobs,
    prune_jobs,
    requeue_stale_jobs,
    retry_job,
)
from feedsentry.utils import utc_now_iso_offset

from conftest import add_feed


def _age_lock(conn, job_id, seconds):
    conn.execute(
        "UPDATE jobs SET locked_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-seconds), job_id),
    )
    conn.commit()


def test_enqueue_and_claim_job(db_path):
    conn = init_db(db_path)
    conn2 = init_db(db_path)

    job_id = enqueue_job(conn, "prune_jobs", {"reason": "test"}).job_id
    claimed = claim_next_job(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status == "running"
    assert claimed.locked_by == "worker-1"
    assert claimed.attempts == 1
    assert claim_next_job(conn2, "worker-2") is None

    assert complete_job(conn, job_id, {"deleted": 0})
    job = get_job(conn, job_id)
    assert job.status == "succeeded"
    assert job.result == {"deleted": 0}
    assert not complete_job(conn, job_id)
    conn.close()
    conn2.close()


def test_job_key_deduplicates(conn):
    first = enqueue_job(conn, "prune_jobs", None, job_key="prune:once")
    second = enqueue_job(conn, "prune_jobs", None, job_key="prune:once")
    assert first.created and not second.created
    assert first.job_id == second.job_id
    assert len(list_jobs(conn)) == 1


def test_claim_prefers_priority_and_filters_types(conn):
    add_feed(conn)
    enqueue_job(conn, "prune_jobs", None)
    manual = enqueue_manual_run(conn, "acme")

    assert claim_next_job(conn, "w1", allowed_types=["match_records"]) is None
    claimed = claim_next_job(conn, "w1")
    assert claimed.id == manual.job_id
    assert claimed.priority == 10


def test_retry_delays_job(conn):
    job_id = enqueue_job(conn, "prune_jobs", None).job_id
    claim_next_job(conn, "w1")

    assert retry_job(conn, job_id, "boom", delay_seconds=3600)
    job = get_job(conn, job_id)
    assert job.status == "queued"
    assert job.error == "boom"
    assert job.locked_by is None
    assert claim_next_job(conn, "w1") is None


def test_fail_job_only_from_running(conn):
    job_id = enqueue_job(conn, "prune_jobs", None).job_id
    assert not fail_job(conn, job_id, "not claimed")
    claim_next_job(conn, "w1")
    assert fail_job(conn, job_id, "boom")
    assert get_job(conn, job_id).status == "failed"


def test_stale_jobs_are_requeued_with_run_id(conn):
    job_id = enqueue_job(conn, "prune_jobs", None).job_id
    claim_next_job(conn, "w1")
    conn.execute("UPDATE jobs SET run_id = ? WHERE id = ?", ("run_1", job_id))
    conn.commit()
    _age_lock(conn, job_id, 120)

    assert requeue_stale_jobs(conn, 60) == 1
    job = get_job(conn, job_id)
    assert job.status == "queued"
    assert job.error == "stale_lock_requeued"
    assert job.run_id == "run_1"

    reclaimed = claim_next_job(conn, "w2")
    assert reclaimed.id == job_id
    assert reclaimed.attempts == 2


def test_stale_job_out_of_attempts_fails(conn):
    job_id = enqueue_job(conn, "prune_jobs", None, max_attempts=1).job_id
    claim_next_job(conn, "w1")
    _age_lock(conn, job_id, 120)

    claim_next_job(conn, "w2", lock_timeout_seconds=60)

    job = get_job(conn, job_id)
    assert job.status == "failed"
    assert job.error == "stale_lock_attempts_exhausted"


def test_fresh_lock_is_not_requeued(conn):
    enqueue_job(conn, "prune_jobs", None)
    claim_next_job(conn, "w1")
    assert requeue_stale_jobs(conn, 600) == 0


def test_prune_removes_old_finished_jobs(conn):
    old = enqueue_job(conn, "prune_jobs", None).job_id
    claim_next_job(conn, "w1")
    complete_job(conn, old)
    conn.execute(
        "UPDATE jobs SET finished_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-48 * 3600), old),
    )
    conn.commit()
    recent = enqueue_job(conn, "prune_jobs", None).job_id
    claim_next_job(conn, "w1")
    complete_job(conn, recent)
    queued = enqueue_job(conn, "prune_jobs", None).job_id

    assert prune_jobs(conn, 24) == 1
    assert get_job(conn, old) is None
    assert get_job(conn, recent) is not None
    assert count_jobs_by_status(conn) == {"succeeded": 1, "queued": 1}
    assert get_job(conn, queued).status == "queued"
