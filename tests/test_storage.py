import pytest
from datetime import datetime, timedelta
from autopilot.models.job import ScheduledJob, JobStatus, RetryMetadata
from conftest import make_job, NOW


def test_job_creation():
    job = ScheduledJob(page_id="page-1", content="hello")
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert isinstance(job.created_at, datetime)
    assert job.scheduled_for.tzinfo is not None

def test_null_metadata_becomes_empty():
    job = ScheduledJob(page_id="page-1", content="hello", retry_metadata=None)
    assert job.retry_metadata == RetryMetadata()

def test_is_due_rules():
    assert make_job("a").is_due(NOW, 3)
    assert not make_job("b", minutes=1).is_due(NOW, 3)
    assert make_job("c", status="failed", retry_metadata={"retry_count": 2}).is_due(NOW, 3)
    assert not make_job("d", status="failed", retry_metadata={"retry_count": 3}).is_due(NOW, 3)
    assert not make_job("e", status="processing").is_due(NOW, 3)
    assert not make_job("f", status="published").is_due(NOW, 3)

@pytest.mark.asyncio
async def test_storage_add_job(storage):
    job = make_job("job-1", media_url="https://cdn.example.com/a.jpg")
    await storage.add_job(job)
    retrieved = await storage.get_job(job.id)
    assert retrieved is not None
    assert retrieved.content == "post job-1"
    assert retrieved.media_url == "https://cdn.example.com/a.jpg"
    assert retrieved.status == JobStatus.PENDING
    assert retrieved.scheduled_for == NOW

@pytest.mark.asyncio
async def test_storage_get_missing_job(storage):
    assert await storage.get_job("nope") is None

@pytest.mark.asyncio
async def test_storage_save_job(storage):
    job = make_job("job-1")
    await storage.add_job(job)

    job.status = JobStatus.PENDING
    job.retry_metadata.retry_count = 2
    job.retry_metadata.last_error = "timeout"
    job.retry_metadata.last_retry_at = NOW
    await storage.save(job)

    retrieved = await storage.get_job(job.id)
    assert retrieved.retry_metadata.retry_count == 2
    assert retrieved.retry_metadata.last_error == "timeout"
    assert retrieved.retry_metadata.last_retry_at == NOW

@pytest.mark.asyncio
async def test_save_inserts_unknown_job(storage):
    await storage.save(make_job("job-1"))
    assert (await storage.get_job("job-1")).status == JobStatus.PENDING

@pytest.mark.asyncio
async def test_find_due_applies_eligibility(storage):
    for job in [
        make_job("pending-due", -5),
        make_job("pending-future", 5),
        make_job("retryable", -10, status="failed", retry_metadata={"retry_count": 2}),
        make_job("exhausted", -10, status="failed", retry_metadata={"retry_count": 3}),
        make_job("in-flight", -10, status="processing"),
        make_job("done", -10, status="published"),
    ]:
        await storage.add_job(job)

    due = await storage.find_due(NOW, 10, 3)
    assert [job.id for job in due] == ["retryable", "pending-due"]

@pytest.mark.asyncio
async def test_find_due_limit_and_order(storage):
    for i in range(5):
        await storage.add_job(make_job(f"job-{i}", minutes=-i))

    due = await storage.find_due(NOW, 3, 3)
    assert [job.id for job in due] == ["job-4", "job-3", "job-2"]

@pytest.mark.asyncio
async def test_future_job_becomes_due(storage):
    await storage.add_job(make_job("later", minutes=10))
    assert await storage.find_due(NOW, 10, 3) == []
    due = await storage.find_due(NOW + timedelta(minutes=10), 10, 3)
    assert [job.id for job in due] == ["later"]

@pytest.mark.asyncio
async def test_count_by_status(storage):
    await storage.add_job(make_job("a"))
    await storage.add_job(make_job("b"))
    await storage.add_job(make_job("c", status="published"))

    counts = await storage.count_by_status()
    assert counts[JobStatus.PENDING] == 2
    assert counts[JobStatus.PUBLISHED] == 1
    assert counts[JobStatus.FAILED] == 0

@pytest.mark.asyncio
async def test_requeue_failed(storage):
    await storage.add_job(make_job(
        "job-1", status="failed", error_message="boom",
        retry_metadata={"retry_count": 3, "final_error": "boom", "failed_at": NOW}))
    await storage.add_job(make_job("job-2"))

    job = await storage.requeue_failed("job-1")
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert job.error_message is None
    assert await storage.requeue_failed("job-2") is None
    assert await storage.requeue_failed("missing") is None

    due = await storage.find_due(NOW, 10, 3)
    assert {j.id for j in due} == {"job-1", "job-2"}

@pytest.mark.asyncio
async def test_reset_stale_jobs(storage):
    await storage.add_job(make_job("job-1", status="processing"))
    await storage.add_job(make_job("job-2"))

    assert await storage.reset_stale_jobs(timedelta(hours=1)) == 0
    assert await storage.reset_stale_jobs(timedelta(0)) == 1
    assert (await storage.get_job("job-1")).status == JobStatus.PENDING
