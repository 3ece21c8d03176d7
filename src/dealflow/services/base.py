"""
Boundary contracts for the collaborators the engine calls out to.

The rule store, template store, template applier, transaction reader,
notification sink, and audit sink all belong to the surrounding system.
The engine only sees these protocols; any object with matching async
methods plugs in (structural typing, no inheritance needed).
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from dealflow.models import AuditEntry, AutomationRule, Notification


@runtime_checkable
class RuleStore(Protocol):
    """Read-only access to automation rules."""

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        """Fetch a rule by id, None if it does not exist."""
        ...

    async def list_active_rules(self) -> list[AutomationRule]:
        """All rules with ``is_active`` set."""
        ...


@runtime_checkable
class TemplateStore(Protocol):
    """Lookup of workflow templates."""

    async def get_template(self, template_id: str) -> dict[str, Any] | None:
        """Fetch a template definition, None if it does not exist."""
        ...


@runtime_checkable
class TemplateApplier(Protocol):
    """
    External procedure that instantiates a template on a transaction.

    Must be safe to call more than once with the same inputs: retries
    re-invoke it after a failed attempt.
    """

    async def apply(self, transaction_id: str, template_id: str, applied_by: str | None) -> str:
        """
        Apply the template.

        Returns:
            Opaque workflow instance identifier

        Raises:
            Exception: Any failure; the engine classifies and retries it
        """
        ...


@runtime_checkable
class TransactionReader(Protocol):
    """Read access to transaction records."""

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        ...

    async def list_transactions(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        """Transactions whose ``status`` is one of ``statuses``."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Insert-only channel for in-app notifications."""

    async def insert(self, notification: Notification) -> None:
        ...


@runtime_checkable
class AuditLogSink(Protocol):
    """Append-only audit log."""

    async def append(self, entry: AuditEntry) -> None:
        ...
