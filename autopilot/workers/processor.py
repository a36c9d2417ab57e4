import logging
from .backoff import calculate_backoff
from .clock import Clock
from .executor import Executor
from ..models.config import AutopilotConfig
from ..models.errors import ScheduledPostError
from ..models.job import JobStatus, ScheduledJob
from ..storage.database import JobStore


class JobProcessor:
    """Runs one attempt of a scheduled job and records the outcome.

    pending/failed -> processing -> published | pending (retry) | failed

    The processing write happens before anything else so a crash mid-attempt
    leaves the job visibly in processing. Backoff for a failed attempt is
    applied at the start of the next attempt, not when the failure happens.
    """

    def __init__(
        self,
        store: JobStore,
        executor: Executor,
        config: AutopilotConfig = None,
        clock: Clock = None,
        logger: logging.Logger = None,
        rng=None,
    ):
        self.store = store
        self.executor = executor
        self.config = config or AutopilotConfig()
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger(__name__)
        self.rng = rng

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    def backoff_for(self, retry_count: int) -> float:
        return calculate_backoff(
            retry_count - 1, self.config.base_delay_ms, self.config.max_delay_ms, self.rng)

    async def process(self, job: ScheduledJob) -> ScheduledJob:
        retry_count = job.retry_count
        self.logger.info(
            f"Processing scheduled post {job.id} (retry {retry_count}/{self.max_retries})")

        # A store failure here propagates untouched: nothing changed server-side
        job.status = JobStatus.PROCESSING
        await self.store.save(job)

        try:
            if retry_count > 0:
                delay = self.backoff_for(retry_count)
                self.logger.info(f"Applying backoff delay of {delay:.0f}ms for post {job.id}")
                await self.clock.sleep(delay)

            result = await self.executor.execute(job.id)
        except Exception as e:
            await self._record_failure(job, min(retry_count + 1, self.max_retries), e)
            raise ScheduledPostError(
                f"Failed to publish scheduled post: {e}",
                job.id,
                job.retry_count,
                terminal=job.status == JobStatus.FAILED,
            ) from e

        job.status = JobStatus.PUBLISHED
        job.published_content_id = result.content_id
        job.published_at = result.published_at
        job.error_message = None
        job.retry_metadata.last_error = None
        await self.store.save(job)

        self.logger.info(f"Successfully published scheduled post {job.id}: {result.content_id}")
        return job

    async def _record_failure(self, job: ScheduledJob, new_retry_count: int, error: Exception):
        message = str(error) or type(error).__name__
        now = self.clock.now()
        meta = job.retry_metadata
        meta.retry_count = new_retry_count

        self.logger.error(
            f"Failed to publish post {job.id} (attempt {new_retry_count}/{self.max_retries}): {message}")

        if new_retry_count < self.max_retries:
            meta.last_error = message
            meta.last_retry_at = now
            job.status = JobStatus.PENDING
            self.logger.info(
                f"Post {job.id} will be retried on a later run "
                f"(backoff ~{self.backoff_for(new_retry_count):.0f}ms)")
        else:
            meta.final_error = message
            meta.failed_at = now
            job.error_message = message
            job.status = JobStatus.FAILED
            self.logger.error(f"Post {job.id} failed permanently after {new_retry_count} attempts")

        await self.store.save(job)
