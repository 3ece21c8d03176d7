"""In-memory ledger implementation for dealflow.

Design Pattern: Adapter Pattern
InMemoryExecutionLedger adapts in-memory dictionaries to the ExecutionLedger
interface. Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from uuid_extensions import uuid7

from dealflow.models import (
    ExecutionNotFoundError,
    ExecutionStatus,
    RetryJobStatus,
    ScheduledRetry,
    WorkflowExecution,
)
from dealflow.storage.base import ExecutionLedger, StorageError


class InMemoryExecutionLedger(ExecutionLedger):
    """In-memory ledger for tests and demos.

    Can be substituted for SqliteExecutionLedger without changing client code.
    Not durable: retry jobs are lost with the process.

    Usage:
        ledger = InMemoryExecutionLedger()
        execution = await ledger.create_execution(rule_id, transaction_id)
    """

    def __init__(self, max_retry_count: int | None = None):
        super().__init__(max_retry_count)

        # Storage: {execution_id: WorkflowExecution}
        self._executions: dict[str, WorkflowExecution] = {}

        # Storage: {job_id: ScheduledRetry}
        self._retries: dict[str, ScheduledRetry] = {}

        # Single lock makes each method one atomic step
        self._lock = asyncio.Lock()

        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return "InMemoryExecutionLedger"

    async def create_execution(
        self, rule_id: str, transaction_id: str, metadata: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        async with self._lock:
            now = datetime.now(UTC)
            execution = WorkflowExecution(
                id=str(uuid7()),
                rule_id=rule_id,
                transaction_id=transaction_id,
                status=ExecutionStatus.PENDING,
                retry_count=0,
                executed_at=now,
                metadata=copy.deepcopy(metadata or {}),
                updated_at=now,
            )
            self._executions[execution.id] = execution
            return _snapshot(execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return None
            return _snapshot(execution)

    async def list_executions(
        self,
        *,
        rule_id: str | None = None,
        transaction_id: str | None = None,
        status: ExecutionStatus | None = None,
        executed_after: datetime | None = None,
        executed_before: datetime | None = None,
    ) -> list[WorkflowExecution]:
        async with self._lock:
            results = []
            for execution in self._executions.values():
                if rule_id is not None and execution.rule_id != rule_id:
                    continue
                if transaction_id is not None and execution.transaction_id != transaction_id:
                    continue
                if status is not None and execution.status != status:
                    continue
                if executed_after is not None and execution.executed_at < executed_after:
                    continue
                if executed_before is not None and execution.executed_at >= executed_before:
                    continue
                results.append(_snapshot(execution))

            results.sort(key=lambda e: (e.executed_at, e.id))
            return results

    async def transition(
        self,
        execution_id: str,
        to_status: ExecutionStatus,
        *,
        error_message: str | None = None,
        retry_count: int | None = None,
        metadata_updates: dict[str, Any] | None = None,
        manual: bool = False,
    ) -> WorkflowExecution:
        async with self._lock:
            current = self._require_execution(execution_id)
            updated = self._plan(
                current,
                to_status,
                error_message=error_message,
                retry_count=retry_count,
                metadata_updates=metadata_updates,
                manual=manual,
            )
            self._executions[execution_id] = updated
            return _snapshot(updated)

    async def schedule_retry(
        self,
        execution_id: str,
        retry_count: int,
        error_message: str,
        run_at: datetime,
    ) -> ScheduledRetry:
        async with self._lock:
            current = self._require_execution(execution_id)
            updated = self._plan(
                current,
                ExecutionStatus.RETRYING,
                error_message=error_message,
                retry_count=retry_count,
            )

            job = ScheduledRetry(
                job_id=str(uuid7()),
                execution_id=execution_id,
                attempt=retry_count,
                run_at=run_at,
                status=RetryJobStatus.PENDING,
            )

            # Both writes happen under the same lock acquisition
            self._executions[execution_id] = updated
            self._retries[job.job_id] = job

            # Worker clears the event after waking
            self._work_notify.set()
            return replace(job)

    async def claim_due_retry(self, worker_id: str, now: datetime | None = None) -> ScheduledRetry | None:
        async with self._lock:
            now = now or datetime.now(UTC)
            due = [job for job in self._retries.values() if job.is_due(now)]
            if not due:
                return None

            due.sort(key=lambda j: (j.run_at, j.created_at))
            job = due[0]
            claimed = replace(
                job,
                status=RetryJobStatus.CLAIMED,
                locked_by=worker_id,
                claimed_at=now,
            )
            self._retries[job.job_id] = claimed

            # Daisy-chain: more due work, wake another worker
            if len(due) > 1:
                self._work_notify.set()

            return replace(claimed)

    async def complete_retry(self, job_id: str) -> None:
        async with self._lock:
            job = self._retries.get(job_id)
            if job is None:
                raise StorageError(f"Retry job not found: job_id={job_id}")

            self._retries[job_id] = replace(
                job,
                status=RetryJobStatus.DONE,
                completed_at=datetime.now(UTC),
            )

    async def get_retry(self, job_id: str) -> ScheduledRetry | None:
        async with self._lock:
            job = self._retries.get(job_id)
            return replace(job) if job is not None else None

    async def list_retries(self, execution_id: str | None = None) -> list[ScheduledRetry]:
        async with self._lock:
            jobs = [
                replace(job)
                for job in self._retries.values()
                if execution_id is None or job.execution_id == execution_id
            ]
            jobs.sort(key=lambda j: (j.run_at, j.created_at))
            return jobs

    async def next_retry_time(self) -> datetime | None:
        async with self._lock:
            pending = [
                job.run_at for job in self._retries.values() if job.status == RetryJobStatus.PENDING
            ]
            return min(pending) if pending else None

    async def recover_stale_retries(
        self, older_than: timedelta, now: datetime | None = None
    ) -> int:
        async with self._lock:
            now = now or datetime.now(UTC)
            cutoff = now - older_than
            count = 0
            for job_id, job in list(self._retries.items()):
                if (
                    job.status == RetryJobStatus.CLAIMED
                    and job.claimed_at is not None
                    and job.claimed_at < cutoff
                ):
                    self._retries[job_id] = replace(
                        job, status=RetryJobStatus.PENDING, locked_by=None, claimed_at=None
                    )
                    count += 1

            if count:
                self._work_notify.set()
            return count

    async def reset(self) -> None:
        async with self._lock:
            self._executions.clear()
            self._retries.clear()

    async def close(self) -> None:
        pass

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    def _require_execution(self, execution_id: str) -> WorkflowExecution:
        """Guard clause for methods that need an existing row (lock must be held)."""
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution not found: execution_id={execution_id}")
        return execution


def _snapshot(execution: WorkflowExecution) -> WorkflowExecution:
    """Detached copy so callers cannot mutate stored rows."""
    return replace(execution, metadata=copy.deepcopy(execution.metadata))
