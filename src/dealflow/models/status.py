"""Status enumerations for automation execution tracking.

Defines the lifecycle of a workflow execution record, the lifecycle of a
durable retry job, and the trigger events rules can subscribe to.
"""

from enum import Enum


class ExecutionStatus(Enum):
    """Status of a single workflow execution.

    Lifecycle:
        PENDING → RUNNING → COMPLETED
                          ↘ RETRYING → RUNNING → ...
                          ↘ FAILED

    Design: Explicit State Machine
        Every move between states is an explicit, recorded transition.
        A retry re-enters RUNNING through RETRYING → RUNNING rather than
        silently reusing the running state.
    """

    PENDING = "pending"
    """Record created, no side effects started yet."""

    RUNNING = "running"
    """Template resolution/application in progress."""

    COMPLETED = "completed"
    """Template applied successfully (terminal)."""

    FAILED = "failed"
    """Retries exhausted or error not retryable (terminal)."""

    RETRYING = "retrying"
    """Last attempt failed, a durable retry job is scheduled."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no automatic transitions leave it)."""
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

    def can_transition_to(self, target: "ExecutionStatus", manual: bool = False) -> bool:
        """Check whether moving from this status to ``target`` is allowed.

        Args:
            target: Desired next status
            manual: True for operator-initiated transitions (manual retry)

        Returns:
            True if the transition is part of the state machine
        """
        if target in _TRANSITIONS[self]:
            return True
        return manual and target in _MANUAL_TRANSITIONS.get(self, ())

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[ExecutionStatus, tuple[ExecutionStatus, ...]] = {
    ExecutionStatus.PENDING: (
        ExecutionStatus.RUNNING,
        ExecutionStatus.RETRYING,
        ExecutionStatus.FAILED,
    ),
    ExecutionStatus.RUNNING: (
        ExecutionStatus.COMPLETED,
        ExecutionStatus.RETRYING,
        ExecutionStatus.FAILED,
    ),
    ExecutionStatus.RETRYING: (
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
    ),
    ExecutionStatus.COMPLETED: (),
    ExecutionStatus.FAILED: (),
}

# Operator "retry" button: one conditional write claims the row and starts the attempt.
_MANUAL_TRANSITIONS: dict[ExecutionStatus, tuple[ExecutionStatus, ...]] = {
    ExecutionStatus.FAILED: (ExecutionStatus.RUNNING,),
}


class RetryJobStatus(Enum):
    """Status of a durable retry job.

    Lifecycle:
        PENDING → CLAIMED → DONE
                  CLAIMED → PENDING (stale claim recovered)
    """

    PENDING = "PENDING"
    """Waiting for run_at to pass and a worker to claim it."""

    CLAIMED = "CLAIMED"
    """A worker is running the retry."""

    DONE = "DONE"
    """Retry attempt finished (whatever its outcome)."""

    def __str__(self) -> str:
        return self.value


class TriggerEvent(Enum):
    """Events an automation rule can be bound to."""

    STATUS_CHANGE = "status_change"
    TASK_COMPLETED = "task_completed"
    DOCUMENT_UPLOADED = "document_uploaded"
    CONTRACT_DATE_OFFSET = "contract_date_offset"
    CLOSING_DATE_OFFSET = "closing_date_offset"
    TIME_BASED = "time_based"

    @property
    def is_scheduled(self) -> bool:
        """True for events fired by the periodic date/time scanner."""
        return self in (
            TriggerEvent.CONTRACT_DATE_OFFSET,
            TriggerEvent.CLOSING_DATE_OFFSET,
            TriggerEvent.TIME_BASED,
        )

    def __str__(self) -> str:
        return self.value
