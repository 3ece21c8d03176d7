"""
Transaction Kickoff Demo

A status change fires two automation rules. One applies its template on the
first try; the other hits a flaky template service, is scheduled for a
retry, and completes when the retry worker picks it up.

## Verification

- "Intake checklist" completes immediately (retry_count = 0)
- "Welcome packet" completes on its first retry (retry_count = 1)
- Two notifications are delivered to agent-7

## Run with
```bash
PYTHONPATH=src python3 examples/transaction_kickoff.py
```
"""

import asyncio
import logging

from dealflow import (
    AutomationRule,
    Dispatcher,
    ExecutionManager,
    RetryPolicy,
    RetryWorker,
    RuleMatcher,
    TriggerContext,
    TriggerEvent,
    open_ledger,
)
from dealflow.services import (
    InMemoryAuditLog,
    InMemoryNotificationSink,
    InMemoryRuleStore,
    InMemoryTemplateApplier,
    InMemoryTemplateStore,
    InMemoryTransactionReader,
)

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


class FlakyTemplateService(InMemoryTemplateApplier):
    """Fails the first application of the welcome packet template."""

    def __init__(self, templates):
        super().__init__(templates)
        self.welcome_failures = 1

    async def apply(self, transaction_id, template_id, applied_by):
        if template_id == "tpl-welcome" and self.welcome_failures > 0:
            self.welcome_failures -= 1
            raise ConnectionError("template service timed out")
        return await super().apply(transaction_id, template_id, applied_by)


async def main():
    ledger = await open_ledger("memory://", max_retry_count=3)

    templates = InMemoryTemplateStore(
        {
            "tpl-intake": {"id": "tpl-intake", "tasks": ["Order title", "Open escrow"]},
            "tpl-welcome": {"id": "tpl-welcome", "tasks": ["Send welcome packet"]},
        }
    )
    rules = InMemoryRuleStore(
        [
            AutomationRule(
                id="rule-intake",
                name="Intake checklist",
                trigger_event=TriggerEvent.STATUS_CHANGE,
                template_id="tpl-intake",
                trigger_condition={"to_status": "active"},
            ),
            AutomationRule(
                id="rule-welcome",
                name="Welcome packet",
                trigger_event=TriggerEvent.STATUS_CHANGE,
                template_id="tpl-welcome",
                trigger_condition={"from_status": "intake", "to_status": "active"},
            ),
        ]
    )
    transactions = InMemoryTransactionReader(
        [
            {
                "id": "tx-1",
                "status": "active",
                "agent_id": "agent-7",
                "property_address": "12 Harbor View Dr",
            }
        ]
    )
    notifications = InMemoryNotificationSink()

    manager = ExecutionManager(
        ledger,
        rules=rules,
        templates=templates,
        applier=FlakyTemplateService(templates),
        transactions=transactions,
        notifications=notifications,
        audit=InMemoryAuditLog(),
    ).with_retry_policy(RetryPolicy(max_attempts=3, base_delay_ms=200))

    handle = await RetryWorker(ledger, manager, "demo-worker").with_poll_interval(0.1).start()

    context = TriggerContext(
        transaction_id="tx-1",
        transaction=await transactions.get_transaction("tx-1"),
        trigger_data={"old_status": "intake", "new_status": "active"},
    )
    results = await Dispatcher(RuleMatcher(rules), manager).dispatch(
        TriggerEvent.STATUS_CHANGE, context
    )
    for result in results:
        print(f"dispatched: {result}")

    # First retry waits base_delay_ms * 1
    await asyncio.sleep(1.0)
    await handle.shutdown()

    print("\nExecutions:")
    for execution in await ledger.list_executions(transaction_id="tx-1"):
        print(
            f"  {execution.rule_name:<18} status={execution.status} "
            f"retry_count={execution.retry_count}"
        )

    print("\nNotifications:")
    for notification in notifications.notifications:
        print(f"  -> {notification.user_id}: {notification.message}")

    await ledger.close()


if __name__ == "__main__":
    asyncio.run(main())
