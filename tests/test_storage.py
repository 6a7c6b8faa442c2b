import threading
from datetime import timedelta

import pytest

from errors import LockNotOwned, QueueUnavailable
from models import ACTIVE, COMPLETED, FAILED, WAITING
from storage import Storage, iso
from submitter import JobSubmitter


@pytest.fixture
def submit(storage, make_payload):
    submitter = JobSubmitter(storage)

    def _submit(conversion_id, tier="free"):
        return submitter.submit(make_payload(conversion_id), tier).job_id

    return _submit


def test_enqueue_is_idempotent_while_job_is_live(storage, submit):
    first = submit("c1", "premium")
    second = submit("c1", "premium")
    assert first == second == "conversion:c1"
    assert len(storage.list_jobs()) == 1


def test_enqueue_returns_existing_job_unchanged(storage, submit, make_payload):
    submit("c1", "free")
    storage.dequeue_next("w1")
    handle = JobSubmitter(storage).submit(make_payload("c1"), "enterprise")
    job = storage.get_job(handle.job_id)
    assert handle.created is False
    assert job.state == ACTIVE
    assert job.priority == 4


def test_terminal_job_is_replaced_on_resubmit(storage, submit):
    job_id = submit("c1", "free")
    storage.dequeue_next("w1")
    storage.complete(job_id, "w1", {"page_count": 1})
    submit("c1", "free")
    job = storage.get_job(job_id)
    assert job.state == WAITING
    assert job.attempts_made == 0
    assert storage.failure_history(job_id) == []


def test_resubmit_after_terminal_failure_keeps_history(storage, submit, clock):
    job_id = submit("c1", "free")  # 2 attempts
    for _ in range(2):
        clock.advance(seconds=10)
        storage.dequeue_next("w1")
        storage.fail(job_id, "w1", "corrupt pdf")
    assert storage.get_job(job_id).state == FAILED

    submit("c1", "free")
    assert storage.get_job(job_id).state == WAITING
    history = storage.failure_history(job_id)
    assert len(history) == 1
    assert history[0]["attempts_made"] == 2
    assert history[0]["max_attempts"] == 2
    assert history[0]["error"] == "corrupt pdf"


def test_priority_ordering(storage, submit):
    for cid, tier in [("f", "free"), ("b", "basic"), ("p", "premium"), ("e", "enterprise")]:
        submit(cid, tier)
    order = [storage.dequeue_next("w1").conversion_id for _ in range(4)]
    assert order == ["e", "p", "b", "f"]
    assert storage.dequeue_next("w1") is None


def test_fifo_within_tier(storage, submit, clock):
    submit("first", "basic")
    clock.advance(milliseconds=1)
    submit("second", "basic")
    assert storage.dequeue_next("w1").conversion_id == "first"
    assert storage.dequeue_next("w1").conversion_id == "second"


def test_fifo_with_identical_timestamps(storage, submit):
    for cid in ["a", "b", "c"]:
        submit(cid, "free")
    assert [storage.dequeue_next("w").conversion_id for _ in range(3)] == ["a", "b", "c"]


def test_enterprise_overtakes_earlier_free_job(storage, submit, clock):
    submit("A", "free")
    clock.advance(seconds=1)
    submit("B", "enterprise")
    assert storage.dequeue_next("w1").conversion_id == "B"
    assert storage.dequeue_next("w1").conversion_id == "A"


def test_dequeue_sets_lock(storage, submit, clock):
    job_id = submit("c1")
    job = storage.dequeue_next("w1")
    assert job.id == job_id
    assert job.state == ACTIVE
    assert job.lock_owner == "w1"
    assert job.lock_expires_at == iso(clock() + timedelta(seconds=300))
    assert job.started_at == iso(clock())


def test_retry_accounting_and_backoff(storage, submit, clock):
    job_id = submit("c1", "basic")  # 3 attempts
    for expected_attempts in (1, 2):
        assert storage.dequeue_next("w1").id == job_id
        failed_at = clock()
        job = storage.fail(job_id, "w1", "boom")
        assert job.state == WAITING
        assert job.attempts_made == expected_attempts
        assert job.lock_owner is None
        # not eligible before its backoff elapses
        assert storage.dequeue_next("w1") is None
        step = 5 * 2 ** (expected_attempts - 1)
        assert job.next_run_at == iso(failed_at + timedelta(seconds=step))
        clock.advance(seconds=step)

    assert storage.dequeue_next("w1").id == job_id
    job = storage.fail(job_id, "w1", "boom")
    assert job.state == FAILED
    assert job.attempts_made == 3
    assert job.finished_at == iso(clock())

    clock.advance(seconds=3600)
    assert storage.dequeue_next("w1") is None


def test_retried_job_keeps_priority(storage, submit, clock):
    job_id = submit("c1", "premium")
    storage.dequeue_next("w1")
    storage.fail(job_id, "w1", "boom")
    clock.advance(seconds=5)
    submit("c2", "free")
    assert storage.dequeue_next("w1").id == job_id


def test_retried_job_queues_behind_already_eligible_peers(storage, submit, clock):
    job_id = submit("c1", "basic")
    storage.dequeue_next("w1")
    storage.fail(job_id, "w1", "boom")
    clock.advance(seconds=1)
    submit("c2", "basic")
    clock.advance(seconds=4)
    assert storage.dequeue_next("w1").conversion_id == "c2"
    assert storage.dequeue_next("w1").id == job_id


def test_renew_lock_requires_ownership(storage, submit, clock):
    job_id = submit("c1")
    storage.dequeue_next("w1")
    clock.advance(seconds=100)
    assert storage.renew_lock(job_id, "w1") == iso(clock() + timedelta(seconds=300))
    with pytest.raises(LockNotOwned):
        storage.renew_lock(job_id, "w2")


def test_outcomes_require_ownership(storage, submit):
    job_id = submit("c1")
    storage.dequeue_next("w1")
    with pytest.raises(LockNotOwned):
        storage.complete(job_id, "w2")
    with pytest.raises(LockNotOwned):
        storage.fail(job_id, "w2", "boom")
    storage.complete(job_id, "w1")
    with pytest.raises(LockNotOwned):
        storage.renew_lock(job_id, "w1")


def test_report_progress(storage, submit):
    job_id = submit("c1")
    storage.dequeue_next("w1")
    assert storage.report_progress(job_id, 150, "converting")
    job = storage.get_job(job_id)
    assert job.progress == 100
    assert job.progress_stage == "converting"
    assert job.state == ACTIVE
    assert not storage.report_progress("conversion:missing", 10)


def test_complete_stores_result(storage, submit):
    job_id = submit("c1")
    storage.dequeue_next("w1")
    job = storage.complete(job_id, "w1", {"page_count": 3})
    assert job.state == COMPLETED
    assert job.result == {"page_count": 3}
    assert job.progress == 100
    assert job.lock_owner is None


def test_reclaim_expired_lock(storage, submit, clock):
    job_id = submit("c1", "basic")
    storage.dequeue_next("w1")
    clock.advance(seconds=301)
    reclaimed = storage.reclaim_expired_locks()
    assert [j.id for j in reclaimed] == [job_id]
    assert reclaimed[0].state == WAITING
    assert reclaimed[0].attempts_made == 1
    assert reclaimed[0].error == "stalled"

    # another pass must not count the same stall twice
    assert storage.reclaim_expired_locks() == []
    assert storage.get_job(job_id).attempts_made == 1

    clock.advance(seconds=5)
    assert storage.dequeue_next("w2").id == job_id


def test_reclaim_within_lock_window_does_nothing(storage, submit, clock):
    job_id = submit("c1", "basic")
    storage.dequeue_next("w1")
    clock.advance(seconds=150)
    assert storage.reclaim_expired_locks() == []
    job = storage.fail(job_id, "w1", "converter crashed")
    assert job.state == WAITING
    assert job.attempts_made == 1
    assert job.error == "converter crashed"


def test_stall_on_last_attempt_is_terminal(storage, submit, clock):
    job_id = submit("c1", "free")  # 2 attempts
    for _ in range(2):
        clock.advance(seconds=10)
        assert storage.dequeue_next("w1").id == job_id
        clock.advance(seconds=301)
        storage.reclaim_expired_locks()
    job = storage.get_job(job_id)
    assert job.state == FAILED
    assert job.attempts_made == 2
    assert job.error == "stalled"


def test_reclaimed_worker_cannot_complete(storage, submit, clock):
    job_id = submit("c1", "basic")
    storage.dequeue_next("w1")
    clock.advance(seconds=301)
    storage.reclaim_expired_locks()
    clock.advance(seconds=5)
    storage.dequeue_next("w2")
    with pytest.raises(LockNotOwned):
        storage.complete(job_id, "w1")
    assert storage.complete(job_id, "w2").state == COMPLETED


def test_completed_retention_by_count(db_path, clock, make_payload):
    db = Storage(db_path, clock=clock, retention_count=2)
    submitter = JobSubmitter(db)
    for cid in ["a", "b", "c"]:
        submitter.submit(make_payload(cid), "free")
    for _ in range(3):
        job = db.dequeue_next("w1")
        clock.advance(seconds=1)
        db.complete(job.id, "w1")
    assert sorted(j.conversion_id for j in db.list_jobs(state=COMPLETED)) == ["b", "c"]
    db.close()


def test_completed_retention_by_age_keeps_failed(storage, submit, clock):
    old = submit("old", "basic")
    storage.dequeue_next("w1")
    storage.complete(old, "w1")

    dead = submit("dead", "free")
    for _ in range(2):
        clock.advance(seconds=60)
        storage.dequeue_next("w1")
        storage.fail(dead, "w1", "boom")
    assert storage.get_job(dead).state == FAILED

    clock.advance(seconds=25 * 3600)
    fresh = submit("fresh", "basic")
    storage.dequeue_next("w1")
    storage.complete(fresh, "w1")

    assert storage.get_job(old) is None
    assert storage.get_job(fresh).state == COMPLETED
    assert storage.get_job(dead).state == FAILED

    clock.advance(seconds=48 * 3600)
    assert storage.purge_completed() == 1
    assert storage.get_job(dead).state == FAILED


def test_queue_stats(storage, submit, clock):
    waiting = submit("w", "free")
    retry = submit("r", "enterprise")
    active = submit("a", "premium")
    done = submit("d", "premium")

    assert storage.dequeue_next("x").id == retry
    storage.fail(retry, "x", "boom")
    assert storage.dequeue_next("x").id == active
    assert storage.dequeue_next("x").id == done
    storage.complete(done, "x")

    assert storage.get_queue_stats() == {
        "waiting": 1, "delayed": 1, "active": 1, "completed": 1, "failed": 0,
    }
    assert storage.get_job(waiting).state == WAITING


def test_remove_job(storage, submit):
    job_id = submit("c1")
    assert storage.remove_job(job_id) is True
    assert storage.get_job(job_id) is None
    assert storage.remove_job(job_id) is False


def test_config_roundtrip(storage):
    assert storage.get_config("concurrency", default="2") == "2"
    storage.set_config("concurrency", 4)
    storage.set_config("concurrency", 6)
    assert storage.get_config("concurrency") == "6"
    assert [row["key"] for row in storage.list_config()] == ["concurrency"]


def test_enqueue_on_closed_store_raises_queue_unavailable(storage, submit):
    storage.close()
    with pytest.raises(QueueUnavailable):
        submit("c1")


def test_concurrent_dequeue_never_hands_out_a_job_twice(db_path, make_payload):
    seed = Storage(db_path)
    submitter = JobSubmitter(seed)
    for i in range(30):
        submitter.submit(make_payload(f"c{i}"), ["free", "basic", "premium", "enterprise"][i % 4])

    claimed = []
    claimed_lock = threading.Lock()

    def drain(worker_id):
        db = Storage(db_path)
        while True:
            job = db.dequeue_next(worker_id)
            if job is None:
                break
            with claimed_lock:
                claimed.append(job.id)
        db.close()

    threads = [threading.Thread(target=drain, args=(f"w{i}",)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(claimed) == 30
    assert len(set(claimed)) == 30
    seed.close()


def test_shared_store_dequeue_from_threads(storage, submit):
    for i in range(20):
        submit(f"c{i}")

    claimed = []

    def drain(worker_id):
        while True:
            job = storage.dequeue_next(worker_id)
            if job is None:
                return
            claimed.append((job.id, worker_id))

    threads = [threading.Thread(target=drain, args=(f"w{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ids = [job_id for job_id, _ in claimed]
    assert sorted(ids) == sorted(set(ids))
    assert len(ids) == 20
    for job_id, worker_id in claimed:
        assert storage.get_job(job_id).lock_owner == worker_id
