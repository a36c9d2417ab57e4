import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import List
from .clock import Clock
from .processor import JobProcessor
from ..models.config import AutopilotConfig
from ..models.errors import ScheduledPostError
from ..storage.database import JobStore


@dataclass
class TickSummary:
    fetched: int = 0
    published: int = 0
    retrying: int = 0
    failed: int = 0
    errors: int = 0
    job_ids: List[str] = field(default_factory=list)


class Scheduler:
    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        config: AutopilotConfig = None,
        clock: Clock = None,
        logger: logging.Logger = None,
    ):
        self.store = store
        self.processor = processor
        self.config = config or AutopilotConfig()
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger(__name__)
        self.running = False
        self._stop_event = asyncio.Event()

    def stop(self):
        self.running = False
        self._stop_event.set()

    async def tick(self) -> TickSummary:
        """Fetch one batch of due jobs and run them one after another.

        Never raises: per-job failures and a failed fetch are logged only.
        """
        summary = TickSummary()
        self.logger.info("Starting scheduled posts check...")
        try:
            jobs = await self.store.find_due(
                self.clock.now(), self.config.batch_size, self.config.max_retries)
        except Exception as e:
            self.logger.error(f"Scheduled posts job error: {e}")
            summary.errors += 1
            return summary

        summary.fetched = len(jobs)
        self.logger.info(f"Found {len(jobs)} posts to process")

        for job in jobs:
            summary.job_ids.append(job.id)
            try:
                await self.processor.process(job)
                summary.published += 1
            except ScheduledPostError as e:
                if e.terminal:
                    summary.failed += 1
                else:
                    summary.retrying += 1
                self.logger.warning(
                    f"Failed to process post {e.job_id} (retry count {e.retry_count}): {e}")
            except Exception as e:
                summary.errors += 1
                self.logger.exception(f"Failed to process post {job.id}: {e}")

        return summary

    async def run(self):
        """Main scheduler loop. A tick always finishes before the next wait."""
        self.running = True
        self._stop_event.clear()
        self.logger.info(
            f"Scheduled posts job started (runs every {self.config.cadence_seconds:g} seconds)")

        while self.running:
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.cadence_seconds)
            except asyncio.TimeoutError:
                pass

        self.logger.info("Scheduler stopped.")

    def install_signal_handlers(self):
        """Stop gracefully on SIGINT/SIGTERM; call from inside the running loop"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown, sig)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops
                signal.signal(sig, lambda signum, frame: self._handle_shutdown(signum))

    def _handle_shutdown(self, signum):
        self.logger.info(f"Received signal {signum}, shutting down scheduler gracefully...")
        self.stop()
