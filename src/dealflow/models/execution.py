"""Workflow execution: the ledger entry for one rule applied to one transaction."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from dealflow.models.status import ExecutionStatus


@dataclass
class WorkflowExecution:
    """A single timestamped attempt chain to apply one rule to one transaction.

    Design: Value Object
        Instances are snapshots of a ledger row. Ledger methods return a new
        snapshot after every write; callers never mutate one in place to
        change persisted state.
    """

    id: str
    """Unique identifier (UUIDv7 string), generated at creation."""

    rule_id: str
    """Owning rule. Many executions per rule."""

    transaction_id: str
    """Transaction this execution acts upon."""

    status: ExecutionStatus = ExecutionStatus.PENDING
    """Current lifecycle state."""

    retry_count: int = 0
    """Failures observed so far. Never decreases, never exceeds the policy budget."""

    executed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    """Creation timestamp."""

    completed_at: datetime | None = None
    """Set only on the transition to COMPLETED."""

    error_message: str | None = None
    """Last failure reason, present only while RETRYING or FAILED."""

    metadata: dict[str, Any] = field(default_factory=dict)
    """Audit/replay data: rule_name, trigger_context, workflow_instance_id, ..."""

    updated_at: datetime | None = None
    """When the row was last written."""

    @property
    def rule_name(self) -> str | None:
        return self.metadata.get("rule_name")

    @property
    def trigger_data(self) -> dict[str, Any]:
        """Original triggering payload, preserved across attempts."""
        return dict(self.metadata.get("trigger_context") or {})

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def __repr__(self) -> str:
        return (
            f"WorkflowExecution(id={self.id!r}, rule_id={self.rule_id!r}, "
            f"transaction_id={self.transaction_id!r}, status={self.status}, "
            f"retry_count={self.retry_count})"
        )
