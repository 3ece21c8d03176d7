"""Not-found and rule-state errors shared by storage, services, and engine."""

from dealflow.models.retry import RetryableError


class NotFoundError(RetryableError):
    """
    A referenced rule, template, transaction, or execution does not exist.

    Retryable by default: a missing row consumes retry budget like any
    transient failure unless the engine is configured to fail fast.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self._retryable = retryable

    def is_retryable(self) -> bool:
        return self._retryable


class TemplateNotFoundError(NotFoundError):
    """Workflow template referenced by a rule does not exist."""


class RuleNotFoundError(NotFoundError):
    """Automation rule does not exist."""


class TransactionNotFoundError(NotFoundError):
    """Target transaction does not exist."""


class ExecutionNotFoundError(NotFoundError):
    """Execution record does not exist."""


class RuleInactiveError(RetryableError):
    """Rule was toggled inactive before a scheduled retry ran. Never retried."""

    def is_retryable(self) -> bool:
        return False


class AttemptInterruptedError(RetryableError):
    """
    An attempt left its execution in RUNNING and never finished.

    Raised on behalf of a worker or operator process that crashed mid-attempt,
    so the abandoned attempt is counted like any other failure.
    """
