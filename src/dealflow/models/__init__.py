"""Core data models for automation execution.

Defines rules, execution records, trigger contexts, durable retry jobs,
and retry behavior.

Design: Dependency-Free Models
These types have no dependencies on storage, services, or engine modules to
prevent circular imports and keep layering clean.
"""

from dealflow.models.context import TriggerContext
from dealflow.models.errors import (
    AttemptInterruptedError,
    ExecutionNotFoundError,
    NotFoundError,
    RuleInactiveError,
    RuleNotFoundError,
    TemplateNotFoundError,
    TransactionNotFoundError,
)
from dealflow.models.execution import WorkflowExecution
from dealflow.models.records import AuditEntry, Notification
from dealflow.models.retry import RetryableError, RetryPolicy, is_retryable
from dealflow.models.rule import AutomationRule, TriggerCondition
from dealflow.models.scheduled_retry import ScheduledRetry
from dealflow.models.status import ExecutionStatus, RetryJobStatus, TriggerEvent

__all__ = [
    "AutomationRule",
    "TriggerCondition",
    "TriggerEvent",
    "TriggerContext",
    "WorkflowExecution",
    "ExecutionStatus",
    "ScheduledRetry",
    "RetryJobStatus",
    "Notification",
    "AuditEntry",
    "RetryPolicy",
    "RetryableError",
    "is_retryable",
    "NotFoundError",
    "AttemptInterruptedError",
    "TemplateNotFoundError",
    "RuleNotFoundError",
    "TransactionNotFoundError",
    "ExecutionNotFoundError",
    "RuleInactiveError",
]
