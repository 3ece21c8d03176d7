"""
Dealflow: workflow automation execution engine for transaction coordination.

Design Pattern: Façade Pattern
This module re-exports the pieces most callers need: models, ledgers,
the execution manager, the dispatcher, and the retry worker.

Example:
    ```python
    import asyncio
    from dealflow import (
        Dispatcher, ExecutionManager, RuleMatcher, TriggerContext, TriggerEvent,
        open_ledger,
    )

    async def main():
        ledger = await open_ledger("sqlite:///automation.db", max_retry_count=3)
        manager = ExecutionManager(
            ledger,
            rules=rules,
            templates=templates,
            applier=applier,
            transactions=transactions,
            notifications=notifications,
        )
        dispatcher = Dispatcher(RuleMatcher(rules), manager)

        context = TriggerContext(
            transaction_id="tx-1",
            transaction=await transactions.get_transaction("tx-1"),
            trigger_data={"old_status": "intake", "new_status": "active"},
        )
        await dispatcher.dispatch(TriggerEvent.STATUS_CHANGE, context)
        await ledger.close()

    asyncio.run(main())
    ```
"""

from dealflow.config import ConfigError, EngineConfig
from dealflow.engine import (
    DateTriggerScheduler,
    Dispatcher,
    DispatchResult,
    ExecutionError,
    ExecutionManager,
    RetryWorker,
    RetryWorkerHandle,
    RuleMatcher,
    TriggerEvaluator,
)
from dealflow.models import (
    AutomationRule,
    ExecutionStatus,
    RetryableError,
    RetryPolicy,
    ScheduledRetry,
    TriggerContext,
    TriggerEvent,
    WorkflowExecution,
)
from dealflow.storage import (
    ExecutionLedger,
    InMemoryExecutionLedger,
    InvalidTransitionError,
    SqliteExecutionLedger,
    StorageError,
    open_ledger,
)

__version__ = "0.1.0"

__all__ = [
    "AutomationRule",
    "TriggerEvent",
    "TriggerContext",
    "WorkflowExecution",
    "ExecutionStatus",
    "ScheduledRetry",
    "RetryPolicy",
    "RetryableError",
    "ExecutionLedger",
    "InMemoryExecutionLedger",
    "SqliteExecutionLedger",
    "StorageError",
    "InvalidTransitionError",
    "open_ledger",
    "TriggerEvaluator",
    "RuleMatcher",
    "ExecutionManager",
    "ExecutionError",
    "Dispatcher",
    "DispatchResult",
    "RetryWorker",
    "RetryWorkerHandle",
    "DateTriggerScheduler",
    "EngineConfig",
    "ConfigError",
    "__version__",
]
