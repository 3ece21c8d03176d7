"""Collaborator contracts (rules, templates, transactions, sinks) and in-memory fakes."""

from dealflow.services.base import (
    AuditLogSink,
    NotificationSink,
    RuleStore,
    TemplateApplier,
    TemplateStore,
    TransactionReader,
)
from dealflow.services.memory import (
    InMemoryAuditLog,
    InMemoryNotificationSink,
    InMemoryRuleStore,
    InMemoryTemplateApplier,
    InMemoryTemplateStore,
    InMemoryTransactionReader,
)

__all__ = [
    "RuleStore",
    "TemplateStore",
    "TemplateApplier",
    "TransactionReader",
    "NotificationSink",
    "AuditLogSink",
    "InMemoryRuleStore",
    "InMemoryTemplateStore",
    "InMemoryTemplateApplier",
    "InMemoryTransactionReader",
    "InMemoryNotificationSink",
    "InMemoryAuditLog",
]
