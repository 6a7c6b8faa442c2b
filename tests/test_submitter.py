import pytest

from errors import InvalidSubmission, QueueUnavailable
from models import WAITING
from submitter import JobSubmitter, estimate_conversion_time, job_id_for


def test_submit_creates_waiting_job_with_tier_policy(storage, make_payload):
    handle = JobSubmitter(storage).submit(make_payload("abc", conversion_type="docx-to-pdf"), "premium")
    assert handle.job_id == job_id_for("abc") == "conversion:abc"
    assert handle.created is True
    assert handle.priority == 2
    assert handle.max_attempts == 4

    job = storage.get_job(handle.job_id)
    assert job.state == WAITING
    assert job.attempts_made == 0
    assert job.backoff_type == "exponential"
    assert job.backoff_delay_ms == 5000
    assert job.conversion_type == "docx-to-pdf"
    assert job.user_tier == "premium"


def test_duplicate_submit_collapses(storage, make_payload):
    submitter = JobSubmitter(storage)
    first = submitter.submit(make_payload("abc"), "free")
    second = submitter.submit(make_payload("abc"), "free")
    assert first.job_id == second.job_id
    assert second.created is False
    assert storage.get_queue_stats()["waiting"] == 1


def test_empty_conversion_id_is_rejected(storage, make_payload):
    with pytest.raises(InvalidSubmission):
        JobSubmitter(storage).submit(make_payload(""), "free")
    assert storage.list_jobs() == []


def test_unreachable_store(storage, make_payload):
    storage.close()
    with pytest.raises(QueueUnavailable):
        JobSubmitter(storage).submit(make_payload("abc"), "free")


def test_queue_position_scales_with_tier(storage, make_payload):
    submitter = JobSubmitter(storage)
    for i in range(10):
        submitter.submit(make_payload(f"free-{i}"), "free")
    handle = submitter.submit(make_payload("vip"), "enterprise")
    assert handle.queue_position == 2


def test_estimate_has_a_floor():
    assert estimate_conversion_time("pdf", 0, "high", 0) == 3000


def test_estimate_adds_queue_delay():
    one_mb = 1024 * 1024
    assert estimate_conversion_time("pdf", one_mb, "high", 6) == 2500 + 15000 * 5 + 5000


def test_estimate_scales_large_files():
    assert estimate_conversion_time("docx", 10 * 1024 * 1024, "standard", 0) == 11000
