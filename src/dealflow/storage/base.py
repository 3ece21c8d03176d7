"""
ExecutionLedger - Abstract interface for execution record storage.

Design Pattern: Adapter Pattern
ExecutionLedger defines the target interface that all storage adapters
implement. Backends (memory, SQLite, Redis) adapt to it, and the execution
manager and retry worker depend only on this abstraction.

The ledger holds two things:
- workflow execution rows (the audit trail, never deleted)
- durable retry jobs (the deferred re-runs of failed attempts)

State machine rules live here in ``plan_transition`` so every backend
enforces them identically. Backends are responsible only for making the
resulting write conditional on the row not having changed underneath them.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from dealflow.models import (
    ExecutionStatus,
    ScheduledRetry,
    WorkflowExecution,
)


class StorageError(Exception):
    """
    Storage operation failed.

    Backends wrap driver errors in this type with ``raise ... from e``.
    """

    pass


class InvalidTransitionError(StorageError):
    """
    Requested status change is not allowed, or lost a race.

    Raised when the target status is not reachable from the current one,
    when a terminal row would be written again, or when a concurrent writer
    changed the row between read and conditional update.
    """

    pass


def plan_transition(
    current: WorkflowExecution,
    to_status: ExecutionStatus,
    *,
    error_message: str | None = None,
    retry_count: int | None = None,
    metadata_updates: dict[str, Any] | None = None,
    manual: bool = False,
    max_retry_count: int | None = None,
    now: datetime | None = None,
) -> WorkflowExecution:
    """
    Compute the row that results from moving ``current`` to ``to_status``.

    Pure function: validates the transition and returns a new snapshot,
    leaving ``current`` untouched.

    Field rules:
        - COMPLETED sets completed_at and clears error_message
        - RUNNING clears error_message
        - RETRYING and FAILED require error_message
        - retry_count never decreases and never exceeds max_retry_count

    Raises:
        InvalidTransitionError: If any rule is violated
    """
    if not current.status.can_transition_to(to_status, manual=manual):
        raise InvalidTransitionError(
            f"Execution {current.id}: transition {current.status} -> {to_status} not allowed"
        )

    new_retry_count = current.retry_count if retry_count is None else retry_count
    if new_retry_count < current.retry_count:
        raise InvalidTransitionError(
            f"Execution {current.id}: retry_count cannot decrease "
            f"({current.retry_count} -> {new_retry_count})"
        )
    if max_retry_count is not None and new_retry_count > max_retry_count:
        raise InvalidTransitionError(
            f"Execution {current.id}: retry_count {new_retry_count} exceeds {max_retry_count}"
        )

    if to_status in (ExecutionStatus.RETRYING, ExecutionStatus.FAILED) and not error_message:
        raise InvalidTransitionError(f"Execution {current.id}: {to_status} requires an error message")

    now = now or datetime.now(UTC)
    metadata = dict(current.metadata)
    if metadata_updates:
        metadata.update(metadata_updates)

    completed_at = current.completed_at
    if to_status == ExecutionStatus.COMPLETED:
        completed_at = now
        error_message = None
    elif to_status == ExecutionStatus.RUNNING:
        error_message = None

    return replace(
        current,
        status=to_status,
        retry_count=new_retry_count,
        error_message=error_message,
        completed_at=completed_at,
        metadata=metadata,
        updated_at=now,
    )


class ExecutionLedger(ABC):
    """
    Abstract storage interface for workflow executions and retry jobs.

    Clients program to this interface, not to concrete implementations.
    Every mutating method on an execution row is a single conditional
    update; correctness relies on that, not on application-level locks.
    """

    def __init__(self, max_retry_count: int | None = None):
        """
        Args:
            max_retry_count: Optional ceiling enforced on retry_count writes
        """
        self.max_retry_count = max_retry_count

    # ========================================================================
    # Execution Operations
    # ========================================================================

    @abstractmethod
    async def create_execution(
        self, rule_id: str, transaction_id: str, metadata: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """
        Insert a new execution row in PENDING with retry_count 0.

        Args:
            rule_id: Owning rule
            transaction_id: Target transaction
            metadata: Audit/replay data (rule_name, trigger_context)

        Returns:
            Created execution snapshot

        Raises:
            StorageError: If the insert fails
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """
        Retrieve an execution by id.

        Returns:
            Execution if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_executions(
        self,
        *,
        rule_id: str | None = None,
        transaction_id: str | None = None,
        status: ExecutionStatus | None = None,
        executed_after: datetime | None = None,
        executed_before: datetime | None = None,
    ) -> list[WorkflowExecution]:
        """
        Filtered read, ordered by executed_at ascending.

        All filters are optional and combine with AND.
        ``executed_after`` is inclusive, ``executed_before`` exclusive.
        """
        pass

    @abstractmethod
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
        """
        Move an execution to ``to_status`` with a conditional update.

        Args:
            execution_id: Execution to update
            to_status: Target status
            error_message: Failure reason (required for RETRYING/FAILED)
            retry_count: New retry count (must not decrease)
            metadata_updates: Keys merged into metadata
            manual: Operator-initiated transition (allows FAILED -> RUNNING)

        Returns:
            Updated execution snapshot

        Raises:
            ExecutionNotFoundError: If the row does not exist
            InvalidTransitionError: If the transition is illegal or lost a race
        """
        pass

    # ========================================================================
    # Retry Queue Operations
    # ========================================================================

    @abstractmethod
    async def schedule_retry(
        self,
        execution_id: str,
        retry_count: int,
        error_message: str,
        run_at: datetime,
    ) -> ScheduledRetry:
        """
        Record a failure and enqueue its retry in one atomic step.

        Moves the execution to RETRYING with the given retry_count and
        error_message, and inserts a PENDING retry job due at ``run_at``.
        Either both writes happen or neither does, so a retry never becomes
        visible before the failure that caused it.

        Raises:
            ExecutionNotFoundError: If the row does not exist
            InvalidTransitionError: If the row cannot move to RETRYING
        """
        pass

    @abstractmethod
    async def claim_due_retry(self, worker_id: str, now: datetime | None = None) -> ScheduledRetry | None:
        """
        Claim the oldest due retry job.

        Optimistic concurrency: at most one worker wins a given job.

        Args:
            worker_id: Worker identifier recorded as locked_by
            now: Current time (explicit parameter for testability)

        Returns:
            Claimed job, or None if nothing is due
        """
        pass

    @abstractmethod
    async def complete_retry(self, job_id: str) -> None:
        """
        Mark a claimed retry job DONE.

        Raises:
            StorageError: If the job does not exist
        """
        pass

    @abstractmethod
    async def get_retry(self, job_id: str) -> ScheduledRetry | None:
        """Retrieve a retry job by id, None if unknown."""
        pass

    @abstractmethod
    async def list_retries(self, execution_id: str | None = None) -> list[ScheduledRetry]:
        """List retry jobs, optionally for one execution, ordered by run_at."""
        pass

    @abstractmethod
    async def next_retry_time(self) -> datetime | None:
        """
        Earliest run_at among PENDING jobs.

        Used by the retry worker to sleep until the next job is due
        instead of polling.
        """
        pass

    @abstractmethod
    async def recover_stale_retries(
        self, older_than: timedelta, now: datetime | None = None
    ) -> int:
        """
        Return CLAIMED jobs whose claim is older than ``older_than`` to PENDING.

        Recovers jobs held by a worker that crashed mid-retry.

        Returns:
            Number of recovered jobs
        """
        pass

    # ========================================================================
    # Utility Operations
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        Warning: Destructive operation - only use in testing!
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close connections and release resources."""
        pass

    def _plan(self, current: WorkflowExecution, to_status: ExecutionStatus, **kwargs: Any) -> WorkflowExecution:
        """Apply state machine rules with this ledger's retry ceiling."""
        return plan_transition(
            current, to_status, max_retry_count=self.max_retry_count, **kwargs
        )


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for ledgers that can wake retry workers when jobs are enqueued.

    Ledgers that cannot provide notifications skip this protocol and
    workers fall back to polling.

    Contract:
        The ledger calls ``event.set()`` when a retry job is scheduled or
        recovered; workers ``await event.wait()`` and then ``event.clear()``.
    """

    def work_notify(self) -> asyncio.Event:
        """Return event that signals when retry work may be available."""
        ...
