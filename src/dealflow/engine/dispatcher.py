"""
Trigger/dispatch layer: fan an event out to every matching rule.

Each matching rule gets its own execution row and runs concurrently with
the others. A failure in one rule's execution is captured in its
DispatchResult and never affects its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from dealflow.engine.manager import ExecutionManager
from dealflow.engine.matcher import RuleMatcher
from dealflow.models import (
    AutomationRule,
    ExecutionStatus,
    TriggerContext,
    TriggerEvent,
    WorkflowExecution,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    """Outcome of dispatching one matched rule."""

    rule: AutomationRule
    execution: WorkflowExecution | None = None
    """Latest snapshot of the execution row, None if it was never created."""

    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return (
            self.error is None
            and self.execution is not None
            and self.execution.status == ExecutionStatus.COMPLETED
        )

    def __repr__(self) -> str:
        status = self.execution.status if self.execution is not None else None
        return f"DispatchResult(rule={self.rule.id!r}, status={status}, error={self.error!r})"


class Dispatcher:
    """
    Entry point for event producers.

    Example:
        dispatcher = Dispatcher(RuleMatcher(rule_store), manager)
        results = await dispatcher.dispatch(TriggerEvent.STATUS_CHANGE, context)
    """

    def __init__(self, matcher: RuleMatcher, manager: ExecutionManager):
        self._matcher = matcher
        self._manager = manager

    async def dispatch(
        self, event: TriggerEvent, context: TriggerContext, now: datetime | None = None
    ) -> list[DispatchResult]:
        """Execute every active rule matching ``event`` and ``context``."""
        rules = await self._matcher.find_matching_rules(event, context, now)
        if not rules:
            return []

        results = await asyncio.gather(*(self._dispatch_rule(rule, context) for rule in rules))

        failed = sum(1 for result in results if not result.succeeded)
        logger.info(
            f"Dispatched {event} for transaction {context.transaction_id}: "
            f"rules={len(results)} not_completed={failed}"
        )
        return list(results)

    async def dispatch_rule(self, rule: AutomationRule, context: TriggerContext) -> DispatchResult:
        """Execute a single, already-selected rule (scheduler path)."""
        return await self._dispatch_rule(rule, context)

    async def _dispatch_rule(self, rule: AutomationRule, context: TriggerContext) -> DispatchResult:
        try:
            execution = await self._manager.create_execution(rule, context)
        except Exception as e:
            logger.error(f"Could not create execution for rule {rule.id}: {e}")
            return DispatchResult(rule=rule, error=e)

        try:
            completed = await self._manager.run_execution(execution, rule, context)
        except Exception as e:
            latest = await self._manager.ledger.get_execution(execution.id)
            return DispatchResult(rule=rule, execution=latest or execution, error=e)

        return DispatchResult(rule=rule, execution=completed)
