"""Durable retry job for the execution ledger's retry queue."""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from dealflow.models.status import RetryJobStatus


@dataclass
class ScheduledRetry:
    """Deferred re-run of a failed execution attempt.

    Stored next to the execution rows so retries survive process restarts.
    Workers claim due jobs, run them, and mark them done.
    """

    job_id: str
    """Unique job identifier (UUIDv7 string)."""

    execution_id: str
    """Execution to re-run."""

    attempt: int
    """Retry number this job performs (equals the execution's retry_count when scheduled)."""

    run_at: datetime
    """Earliest time the job may run."""

    status: RetryJobStatus = RetryJobStatus.PENDING

    locked_by: str | None = None
    """Worker ID that claimed the job, None if unclaimed."""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    claimed_at: datetime | None = None

    completed_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return self.status == RetryJobStatus.PENDING and self.run_at <= now

    def __repr__(self) -> str:
        return (
            f"ScheduledRetry(job_id={self.job_id!r}, execution_id={self.execution_id!r}, "
            f"attempt={self.attempt}, status={self.status}, locked_by={self.locked_by!r})"
        )
