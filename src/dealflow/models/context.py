"""Trigger context passed from an event producer to the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dealflow.models.execution import WorkflowExecution


@dataclass(frozen=True)
class TriggerContext:
    """Event payload and transaction snapshot that caused a rule to fire.

    Ephemeral: never persisted on its own. The ``trigger_data`` part is
    copied into the execution's metadata so retries can rebuild it.
    """

    transaction_id: str
    transaction: dict[str, Any] = field(default_factory=dict)
    trigger_data: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None

    @classmethod
    def from_execution(
        cls, execution: WorkflowExecution, transaction: dict[str, Any], user_id: str | None = None
    ) -> TriggerContext:
        """Rebuild a context for a retry from a persisted execution and a fresh transaction."""
        return cls(
            transaction_id=execution.transaction_id,
            transaction=transaction,
            trigger_data=execution.trigger_data,
            user_id=user_id,
        )

    @property
    def agent_id(self) -> str | None:
        """Responsible agent of the transaction, if known."""
        return self.transaction.get("agent_id")

    @property
    def display_address(self) -> str:
        return self.transaction.get("property_address") or self.transaction_id
