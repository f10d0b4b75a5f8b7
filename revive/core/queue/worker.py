"""Background worker that drains the pipeline job queue.

Same shape as the deep-understanding worker:
- Daemon thread with its own asyncio event loop
- Queue-based job processing with Semaphore concurrency control
- Polls the job table for claimable jobs
- Heartbeat loop renews leases for jobs this worker holds

Jobs run in a thread (``asyncio.to_thread``) because phase handlers block
on workspace commands and collaborator calls.
"""

import asyncio
import logging
import threading
from typing import Callable, Optional, Set
from uuid import uuid4

from ..errors import PhaseFailedError
from .jobs import ClaimedJob, Job
from .queue import JobQueue

logger = logging.getLogger(__name__)


class PipelineWorker:
    """Pulls jobs from JobQueue and hands each to a single dispatch callable.

    Lifecycle:
    1. start() spawns daemon thread with asyncio loop
    2. _poll_pending() claims due jobs every poll_interval
    3. _process_job_sync() dispatches, then acks or fails the job
    4. stop() signals shutdown and waits for in-flight jobs to settle
    """

    def __init__(
        self,
        job_queue: JobQueue,
        handler: Callable[[Job], None],
        poll_interval: float = 2.0,
        max_concurrent: int = 2,
        heartbeat_interval: float = 30.0,
        drain_timeout: float = 60.0,
    ):
        self._jobs = job_queue
        self._handler = handler
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self.heartbeat_interval = heartbeat_interval
        self.drain_timeout = drain_timeout
        self.worker_id = f"pipeline-{uuid4()}"

        self._queue: Optional[asyncio.Queue] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._in_flight = 0
        self._tasks: Set[asyncio.Task] = set()

    def start(self):
        """Start the background worker thread."""
        if self._running:
            logger.warning("Pipeline worker already running")
            return
        self._running = True
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="pipeline-worker"
        )
        self._thread.start()
        logger.info(f"Pipeline worker {self.worker_id} started")

    def stop(self):
        """Stop claiming, let in-flight jobs finish, then stop the loop."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=self.poll_interval + self.drain_timeout + 5.0)
            if self._thread.is_alive():
                logger.warning("Pipeline worker thread did not exit in time")
        logger.info("Pipeline worker stopped")

    def _run_loop(self):
        """Run the async event loop in the background thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._queue = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

        try:
            self._loop.run_until_complete(self._main_loop())
        except Exception as e:
            logger.error(f"Pipeline worker loop error: {e}")
        finally:
            self._loop.close()

    async def _main_loop(self):
        poll_task = asyncio.create_task(self._poll_pending())
        heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        while self._running:
            try:
                job = await asyncio.wait_for(
                    self._queue.get(),
                    timeout=self.poll_interval,
                )
                task = asyncio.create_task(self._process_with_semaphore(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            except asyncio.TimeoutError:
                continue
            except Exception as e:
                logger.error(f"Error in pipeline worker main loop: {e}")

        poll_task.cancel()
        await self._drain()
        heartbeat_task.cancel()

    async def _drain(self):
        """Wait for running jobs; leases keep being renewed meanwhile."""
        if self._queue.qsize():
            logger.info(f"{self._queue.qsize()} claimed jobs not started, left for lease expiry")
        if not self._tasks:
            return
        logger.info(f"Waiting up to {self.drain_timeout}s for {len(self._tasks)} in-flight jobs")
        _, pending = await asyncio.wait(set(self._tasks), timeout=self.drain_timeout)
        if pending:
            logger.warning(f"{len(pending)} jobs still running at shutdown, left for lease expiry")

    async def _poll_pending(self):
        """Claim due jobs while there is spare capacity."""
        while self._running:
            try:
                capacity = self.max_concurrent - self._in_flight - self._queue.qsize()
                if capacity > 0:
                    for claimed in self._jobs.claim(self.worker_id, limit=capacity):
                        await self._queue.put(claimed)
            except Exception as e:
                logger.error(f"Error polling pipeline jobs: {e}")
            await asyncio.sleep(self.poll_interval)

    async def _heartbeat_loop(self):
        # Also runs during the drain
        while self._running or self._tasks:
            try:
                self._jobs.heartbeat(self.worker_id)
            except Exception as e:
                logger.error(f"Heartbeat error: {e}")
            await asyncio.sleep(self.heartbeat_interval)

    async def _process_with_semaphore(self, claimed: ClaimedJob):
        async with self._semaphore:
            self._in_flight += 1
            try:
                await asyncio.to_thread(self._process_job_sync, claimed)
            finally:
                self._in_flight -= 1

    def _process_job_sync(self, claimed: ClaimedJob):
        """Dispatch one job and settle it in the queue (runs in thread pool)."""
        job = claimed.job
        logger.info(
            f"Processing {job.kind} job {claimed.job_id} for project {job.project_id} "
            f"(attempt {claimed.attempts}/{claimed.max_attempts})"
        )
        try:
            self._handler(job)
        except PhaseFailedError as e:
            # Handler already recorded the failure on the project
            logger.warning(f"Job {claimed.job_id} ended in terminal phase failure: {e}")
            self._settle_failure(claimed, str(e), retryable=False)
            return
        except Exception as e:
            logger.error(f"Job {claimed.job_id} failed: {e}", exc_info=True)
            self._settle_failure(claimed, f"{e.__class__.__name__}: {e}", retryable=True)
            return

        try:
            self._jobs.ack(claimed.job_id)
        except Exception as e:
            logger.error(f"Failed to ack job {claimed.job_id}: {e}")

    def _settle_failure(self, claimed: ClaimedJob, error: str, retryable: bool):
        try:
            self._jobs.fail(claimed.job_id, error, retryable=retryable)
        except Exception as e:
            logger.error(f"Failed to record failure for job {claimed.job_id}: {e}")
