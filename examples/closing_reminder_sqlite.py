"""
Closing Reminder Demo (SQLite, scheduled trigger)

Runs the date trigger scan twice against a SQLite ledger. A rule bound to
"7 days before closing" fires once for the matching transaction; the second
scan the same day finds the execution already recorded and skips it.

Configuration comes from DEALFLOW_* environment variables; the ledger URL
defaults to a local file.

## Run with
```bash
PYTHONPATH=src DEALFLOW_LEDGER_URL=sqlite:///closing_demo.db python3 examples/closing_reminder_sqlite.py
```
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from dealflow import (
    AutomationRule,
    DateTriggerScheduler,
    Dispatcher,
    EngineConfig,
    ExecutionManager,
    RuleMatcher,
    TriggerEvent,
    open_ledger,
)
from dealflow.services import (
    InMemoryNotificationSink,
    InMemoryRuleStore,
    InMemoryTemplateApplier,
    InMemoryTemplateStore,
    InMemoryTransactionReader,
)

logging.basicConfig(level=logging.INFO)


async def main():
    config = EngineConfig.from_env()
    ledger = await open_ledger(config.ledger_url, config.max_retries)
    await ledger.reset()

    closing = (datetime.now(UTC) + timedelta(days=7)).date()
    transactions = InMemoryTransactionReader(
        [
            {
                "id": "tx-100",
                "status": "active",
                "agent_id": "agent-3",
                "property_address": "88 Orchard Ln",
                "closing_date": closing.isoformat(),
            },
            {
                "id": "tx-101",
                "status": "active",
                "agent_id": "agent-3",
                "property_address": "2 Bayside Ct",
                "closing_date": (closing + timedelta(days=30)).isoformat(),
            },
        ]
    )
    templates = InMemoryTemplateStore({"tpl-closing": {"id": "tpl-closing"}})
    rules = InMemoryRuleStore(
        [
            AutomationRule(
                id="rule-closing-week",
                name="Closing week prep",
                trigger_event=TriggerEvent.CLOSING_DATE_OFFSET,
                template_id="tpl-closing",
                trigger_condition={"offset_days": 7, "offset_type": "before"},
            )
        ]
    )
    notifications = InMemoryNotificationSink()

    manager = (
        ExecutionManager(
            ledger,
            rules=rules,
            templates=templates,
            applier=InMemoryTemplateApplier(templates),
            transactions=transactions,
            notifications=notifications,
        )
        .with_retry_policy(config.retry_policy())
        .with_fail_fast_on_not_found(config.fail_fast_on_not_found)
    )
    scheduler = DateTriggerScheduler(
        rules, transactions, ledger, Dispatcher(RuleMatcher(rules), manager)
    )

    print(f"first scan triggered:  {await scheduler.run_once()}")
    print(f"second scan triggered: {await scheduler.run_once()}")

    for execution in await ledger.list_executions():
        print(f"  {execution.transaction_id} {execution.rule_name} -> {execution.status}")
    for notification in notifications.notifications:
        print(f"  notified {notification.user_id}: {notification.message}")

    await ledger.close()


if __name__ == "__main__":
    asyncio.run(main())
