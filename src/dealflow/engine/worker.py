"""
Retry worker: runs durable retry jobs from the execution ledger.

The worker claims due jobs (at most one winner per job), hands each one to
ExecutionManager.retry_execution, and marks it done. A job whose run raised
stays CLAIMED and is returned to PENDING by stale-claim recovery. When the
recovered job runs again and finds its own attempt still RUNNING, the
manager counts that attempt as failed. Stale recovery also settles
executions stuck in RUNNING with no live job (a crashed first attempt or
manual retry).

Waiting is event-driven when the ledger implements WorkNotificationSource:
the worker sleeps until the next job is due or a new job is scheduled,
whichever comes first. Other ledgers fall back to polling.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from dealflow.engine.manager import ExecutionManager
from dealflow.models import ScheduledRetry
from dealflow.storage.base import ExecutionLedger, WorkNotificationSource

logger = logging.getLogger(__name__)


class RetryWorker:
    """
    Background runner for scheduled retries.

    Usage:
        worker = RetryWorker(ledger, manager, "retry-worker-1").with_poll_interval(0.5)
        handle = await worker.start()
        ...
        await handle.shutdown()

    Tests can drain due jobs deterministically instead:
        await worker.run_pending(now=datetime.now(UTC) + timedelta(seconds=10))
    """

    def __init__(
        self,
        ledger: ExecutionLedger,
        manager: ExecutionManager,
        worker_id: str = "retry-worker",
    ):
        self._ledger = ledger
        self._manager = manager
        self._worker_id = worker_id
        self._poll_interval = 1.0
        self._stale_after = timedelta(minutes=5)
        self._stale_check_interval = 60.0

        self._shutdown_event = asyncio.Event()
        self._running = False

        if isinstance(ledger, WorkNotificationSource):
            self._work_notify: asyncio.Event | None = ledger.work_notify()
            logger.debug(f"Worker {worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Worker {worker_id}: Polling-based work detection (no notifications)")

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def with_poll_interval(self, interval: float) -> RetryWorker:
        """Set the maximum sleep between queue checks, in seconds (builder pattern)."""
        if interval <= 0:
            raise WorkerError(f"poll interval must be positive, got {interval}")
        self._poll_interval = interval
        return self

    def with_stale_after(self, older_than: timedelta) -> RetryWorker:
        """Set how long a claim may be held before it is considered abandoned."""
        if older_than <= timedelta(0):
            raise WorkerError(f"stale threshold must be positive, got {older_than}")
        self._stale_after = older_than
        return self

    async def run_pending(self, now: datetime | None = None) -> int:
        """
        Claim and run every job due at ``now``, one after another.

        Jobs scheduled during the drain (follow-up retries) are picked up
        too if they are due at ``now``.

        Returns:
            Number of jobs processed
        """
        processed = 0
        while True:
            job = await self._ledger.claim_due_retry(self._worker_id, now)
            if job is None:
                return processed
            await self._process(job)
            processed += 1

    async def recover_stale(self, now: datetime | None = None) -> int:
        """
        Return abandoned claims to the queue, then settle stalled executions.

        Returns:
            Number of retry jobs requeued plus executions moved out of RUNNING
        """
        jobs = await self._ledger.recover_stale_retries(self._stale_after, now)
        if jobs > 0:
            logger.info(f"Worker {self._worker_id} recovered {jobs} stale retry jobs")

        executions = await self._manager.recover_stalled(self._stale_after, now)
        if executions > 0:
            logger.info(f"Worker {self._worker_id} recovered {executions} stalled executions")
        return jobs + executions

    async def _process(self, job: ScheduledRetry) -> None:
        logger.debug(
            f"Worker {self._worker_id} running retry: job={job.job_id} "
            f"execution={job.execution_id} attempt={job.attempt}"
        )
        try:
            execution = await self._manager.retry_execution(job.execution_id, job.job_id)
            await self._ledger.complete_retry(job.job_id)
        except Exception as e:
            # Left CLAIMED; stale recovery re-queues it
            logger.error(f"Worker {self._worker_id} retry job {job.job_id} failed: {e}")
            return

        status = execution.status if execution is not None else "missing"
        logger.info(
            f"Worker {self._worker_id} finished retry: execution={job.execution_id} "
            f"attempt={job.attempt} status={status}"
        )

    async def start(self) -> RetryWorkerHandle:
        """Start the worker loop as a background task."""
        if self._running:
            raise WorkerError(f"Worker {self._worker_id} is already running")

        self._running = True
        self._shutdown_event.clear()
        task = asyncio.create_task(self._run())
        return RetryWorkerHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Worker {self._worker_id} started")
        loop = asyncio.get_running_loop()
        last_stale_check = loop.time()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    await self.run_pending()

                    if loop.time() - last_stale_check >= self._stale_check_interval:
                        last_stale_check = loop.time()
                        await self.recover_stale()

                    await self._wait_for_work()
                except Exception as e:
                    logger.error(f"Worker {self._worker_id} error: {e}")
                    await asyncio.sleep(self._poll_interval)
        finally:
            logger.info(f"Worker {self._worker_id} stopped")

    async def _wait_for_work(self) -> None:
        """Sleep until the next job is due, new work arrives, or shutdown."""
        timeout = self._poll_interval
        next_run = await self._ledger.next_retry_time()
        if next_run is not None:
            until_due = (next_run - datetime.now(UTC)).total_seconds()
            timeout = max(0.0, min(timeout, until_due))

        waiters = [asyncio.create_task(self._shutdown_event.wait())]
        if self._work_notify is not None:
            waiters.append(asyncio.create_task(self._work_notify.wait()))

        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self._work_notify is not None and self._work_notify.is_set():
            self._work_notify.clear()

    async def shutdown(self) -> None:
        """Stop the loop after the job in progress finishes."""
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()


class RetryWorkerHandle:
    """Handle for controlling a running retry worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: RetryWorker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        return not self._task.done()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for the loop to exit."""
        await self._worker.shutdown()
        await self._task
        logger.info("Retry worker handle closed")

    def abort(self) -> None:
        """Cancel the loop immediately. A claimed job is recovered later as stale."""
        self._task.cancel()


class WorkerError(Exception):
    """Worker operation failed.

    Raised for invalid worker configuration or lifecycle misuse.
    """

    pass
