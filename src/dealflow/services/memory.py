"""In-memory service implementations for tests and demos.

Each class satisfies one protocol from ``dealflow.services.base`` and keeps
its rows in plain lists/dicts so tests can inspect what the engine wrote.
"""

from __future__ import annotations

import copy
from typing import Any

from uuid_extensions import uuid7

from dealflow.models import AuditEntry, AutomationRule, Notification, TemplateNotFoundError


class InMemoryRuleStore:
    def __init__(self, rules: list[AutomationRule] | None = None):
        self._rules: dict[str, AutomationRule] = {rule.id: rule for rule in rules or []}

    def add(self, rule: AutomationRule) -> AutomationRule:
        """Insert or replace a rule (rules are frozen, toggling means replacing)."""
        self._rules[rule.id] = rule
        return rule

    def remove(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    async def get_rule(self, rule_id: str) -> AutomationRule | None:
        return self._rules.get(rule_id)

    async def list_active_rules(self) -> list[AutomationRule]:
        return [rule for rule in self._rules.values() if rule.is_active]


class InMemoryTemplateStore:
    def __init__(self, templates: dict[str, dict[str, Any]] | None = None):
        self._templates: dict[str, dict[str, Any]] = dict(templates or {})

    def add(self, template_id: str, template: dict[str, Any] | None = None) -> None:
        self._templates[template_id] = dict(template or {"id": template_id})

    def remove(self, template_id: str) -> None:
        self._templates.pop(template_id, None)

    async def get_template(self, template_id: str) -> dict[str, Any] | None:
        template = self._templates.get(template_id)
        return copy.deepcopy(template) if template is not None else None


class InMemoryTemplateApplier:
    """
    Records every application and returns a fresh workflow instance id.

    Validates the template against an optional template store, so a
    missing template fails here as well as in the engine's own lookup.
    """

    def __init__(self, templates: InMemoryTemplateStore | None = None):
        self._templates = templates
        self.applied: list[tuple[str, str, str | None]] = []

    async def apply(self, transaction_id: str, template_id: str, applied_by: str | None) -> str:
        if self._templates is not None and await self._templates.get_template(template_id) is None:
            raise TemplateNotFoundError(f"Template not found: template_id={template_id}")

        self.applied.append((transaction_id, template_id, applied_by))
        return str(uuid7())


class InMemoryTransactionReader:
    def __init__(self, transactions: list[dict[str, Any]] | None = None):
        self._transactions: dict[str, dict[str, Any]] = {}
        for transaction in transactions or []:
            self.add(transaction)

    def add(self, transaction: dict[str, Any]) -> dict[str, Any]:
        self._transactions[transaction["id"]] = dict(transaction)
        return transaction

    def remove(self, transaction_id: str) -> None:
        self._transactions.pop(transaction_id, None)

    async def get_transaction(self, transaction_id: str) -> dict[str, Any] | None:
        transaction = self._transactions.get(transaction_id)
        return copy.deepcopy(transaction) if transaction is not None else None

    async def list_transactions(self, statuses: tuple[str, ...]) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(transaction)
            for transaction in self._transactions.values()
            if transaction.get("status") in statuses
        ]


class InMemoryNotificationSink:
    def __init__(self):
        self.notifications: list[Notification] = []

    async def insert(self, notification: Notification) -> None:
        self.notifications.append(notification)


class InMemoryAuditLog:
    def __init__(self):
        self.entries: list[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)
