"""
Date/time trigger scheduler.

Periodic scan that fires date-offset and time-based rules, which have no
triggering event of their own. Meant to be called from an external cron
(or any periodic loop) via ``run_once``.

A rule fires at most once per transaction per UTC day: pairs that already
have an execution recorded for the scanned day are skipped. The day comes
from the ``execution_date`` each scheduled firing stores in its trigger
data, so a scan run for another day (``run_once(now=...)``) deduplicates
against that day rather than the wall clock.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime

from dealflow.engine.dispatcher import Dispatcher
from dealflow.engine.trigger import SCHEDULER_TIME_TOLERANCE, TriggerEvaluator
from dealflow.models import AutomationRule, TriggerContext, WorkflowExecution
from dealflow.services.base import RuleStore, TransactionReader
from dealflow.storage.base import ExecutionLedger

logger = logging.getLogger(__name__)

SCANNED_TRANSACTION_STATUSES = ("intake", "active")


class DateTriggerScheduler:
    """
    Fires scheduled rules for open transactions.

    Example:
        scheduler = DateTriggerScheduler(rule_store, transactions, ledger, dispatcher)
        triggered = await scheduler.run_once()
    """

    def __init__(
        self,
        rules: RuleStore,
        transactions: TransactionReader,
        ledger: ExecutionLedger,
        dispatcher: Dispatcher,
        evaluator: TriggerEvaluator | None = None,
    ):
        self._rules = rules
        self._transactions = transactions
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._evaluator = evaluator or TriggerEvaluator(SCHEDULER_TIME_TOLERANCE)

    async def run_once(self, now: datetime | None = None) -> int:
        """
        Scan open transactions against active scheduled rules.

        Returns:
            Number of rule executions triggered

        Raises:
            SchedulerError: If rules or transactions cannot be read
        """
        now = now or datetime.now(UTC)

        try:
            transactions = await self._transactions.list_transactions(SCANNED_TRANSACTION_STATUSES)
            rules = [
                rule
                for rule in await self._rules.list_active_rules()
                if rule.trigger_event.is_scheduled
            ]
        except Exception as e:
            raise SchedulerError(f"Failed to load scheduler inputs: {e}") from e

        logger.info(f"Found {len(transactions)} transactions and {len(rules)} scheduled rules")

        triggered = 0
        for transaction in transactions:
            for rule in rules:
                context = TriggerContext(
                    transaction_id=transaction["id"],
                    transaction=transaction,
                    trigger_data={
                        "trigger_type": rule.trigger_event.value,
                        "scheduled_execution": True,
                        "execution_date": now.isoformat(),
                    },
                )
                if not self._evaluator.evaluate_rule(rule, context, now):
                    continue
                if await self._already_ran_today(rule, context.transaction_id, now):
                    logger.debug(f"Rule {rule.id} already ran today for {context.transaction_id}")
                    continue

                logger.info(f"Triggering rule {rule.name!r} for transaction {context.transaction_id}")
                await self._dispatcher.dispatch_rule(rule, context)
                triggered += 1

        logger.info(f"Automation scheduler completed. Triggered {triggered} automations.")
        return triggered

    async def _already_ran_today(
        self, rule: AutomationRule, transaction_id: str, now: datetime
    ) -> bool:
        day = now.astimezone(UTC).date()
        existing = await self._ledger.list_executions(
            rule_id=rule.id, transaction_id=transaction_id
        )
        return any(_run_day(execution) == day for execution in existing)


def _run_day(execution: WorkflowExecution) -> date:
    """UTC day an execution fired for: the scan day it recorded, else the day it was created."""
    scanned = execution.trigger_data.get("execution_date")
    if isinstance(scanned, str):
        try:
            return datetime.fromisoformat(scanned).astimezone(UTC).date()
        except ValueError:
            logger.debug(f"Execution {execution.id} has unreadable execution_date {scanned!r}")
    return execution.executed_at.astimezone(UTC).date()


class SchedulerError(Exception):
    """
    Scheduled trigger scan failed.

    Wraps the underlying store error with scan context.
    """

    pass
