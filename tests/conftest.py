import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from autopilot.models.config import AutopilotConfig
from autopilot.models.errors import DatabaseError
from autopilot.models.job import ExecutionResult, ScheduledJob
from autopilot.storage.database import Storage

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.current = now
        self.sleeps = []

    def now(self):
        return self.current

    async def sleep(self, ms):
        self.sleeps.append(ms)


class InMemoryStore:
    """Job store keeping copies, with a log of every save"""

    def __init__(self, jobs=()):
        self.jobs = {}
        self.history = []
        self.find_calls = 0
        self.fail_saves_for = set()
        for job in jobs:
            self.jobs[job.id] = job.model_copy(deep=True)

    async def find_due(self, now, limit, max_retries):
        self.find_calls += 1
        due = [j for j in self.jobs.values() if j.is_due(now, max_retries)]
        due.sort(key=lambda j: (j.scheduled_for, j.created_at, j.id))
        return [j.model_copy(deep=True) for j in due[:limit]]

    async def save(self, job):
        if job.id in self.fail_saves_for:
            raise DatabaseError(f"Failed to save job {job.id}")
        self.jobs[job.id] = job.model_copy(deep=True)
        self.history.append((job.id, job.status, job.retry_count))
        return job

    async def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def statuses(self, job_id):
        return [(status.value, count) for jid, status, count in self.history if jid == job_id]


class ScriptedExecutor:
    """Fails for ids in `failing`, otherwise returns a fake post id"""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def execute(self, job_id):
        self.calls.append(job_id)
        if job_id in self.failing:
            raise RuntimeError(f"Graph API unavailable for {job_id}")
        return ExecutionResult(content_id=f"fb_{job_id}", published_at=NOW)


def make_job(job_id, minutes=0, **kwargs):
    kwargs.setdefault("page_id", "page-1")
    kwargs.setdefault("content", f"post {job_id}")
    return ScheduledJob(id=job_id, scheduled_for=NOW + timedelta(minutes=minutes), **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return AutopilotConfig(max_retries=3, batch_size=10, base_delay_ms=1000, max_delay_ms=30000)


@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except PermissionError:
        pass  # File might still be locked, will be cleaned up later


@pytest.fixture
async def storage(temp_db):
    storage = Storage(temp_db)
    await storage.init()
    yield storage
    await storage.close()
