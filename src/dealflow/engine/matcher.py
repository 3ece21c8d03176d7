"""Rule matching: which active rules fire for an event."""

from __future__ import annotations

import logging
from datetime import datetime

from dealflow.engine.trigger import TriggerEvaluator
from dealflow.models import AutomationRule, TriggerContext, TriggerEvent
from dealflow.services.base import RuleStore

logger = logging.getLogger(__name__)


class RuleMatcher:
    """
    Selects active rules bound to an event whose condition holds.

    Inactive rules never match, whatever their condition says.
    """

    def __init__(self, rules: RuleStore, evaluator: TriggerEvaluator | None = None):
        self._rules = rules
        self._evaluator = evaluator or TriggerEvaluator()

    async def find_matching_rules(
        self, event: TriggerEvent, context: TriggerContext, now: datetime | None = None
    ) -> list[AutomationRule]:
        """
        Find rules that should fire.

        Raises:
            Exception: Whatever the rule store raises; matching cannot
                proceed without the rule list
        """
        try:
            rules = await self._rules.list_active_rules()
        except Exception as e:
            logger.error(f"Error fetching automation rules for transaction {context.transaction_id}: {e}")
            raise

        matching = []
        for rule in rules:
            if not rule.is_active or rule.trigger_event != event:
                continue
            if self._evaluator.evaluate_rule(rule, context, now):
                logger.debug(f"Rule matched: rule={rule.id} name={rule.name!r} event={event}")
                matching.append(rule)

        logger.info(
            f"Rule matching completed: event={event} transaction={context.transaction_id} "
            f"rules={len(rules)} matching={len(matching)}"
        )
        return matching
