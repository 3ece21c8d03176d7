"""
Trigger condition evaluation.

Decides whether a rule's ``trigger_condition`` holds for a given
``TriggerContext``. Evaluation is pure (no I/O) and never raises: an
unknown condition type or a malformed condition evaluates to False and is
logged.

Condition types:
    status_change        from_status / to_status vs trigger_data old/new_status
    task_completed       trigger_data.task, task_title_contains, task_priority
    document_uploaded    trigger_data.document, document_type in file_name
    contract_date_offset transaction.created_at +/- offset_days == today
    closing_date_offset  transaction.closing_date +/- offset_days == today
    time_based           days_of_week (0=Sunday) and time_of_day HH:MM
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any

from dealflow.models import AutomationRule, TriggerCondition, TriggerContext, TriggerEvent

logger = logging.getLogger(__name__)

EVENT_TIME_TOLERANCE = timedelta(minutes=1)
"""time_of_day window for event-driven evaluation."""

SCHEDULER_TIME_TOLERANCE = timedelta(minutes=5)
"""time_of_day window for the periodic date/time scanner."""


class TriggerEvaluator:
    """
    Evaluates trigger conditions against trigger contexts.

    Example:
        evaluator = TriggerEvaluator()
        if evaluator.evaluate_rule(rule, context):
            ...
    """

    def __init__(self, time_tolerance: timedelta = EVENT_TIME_TOLERANCE):
        self._time_tolerance = time_tolerance

    def evaluate_rule(
        self, rule: AutomationRule, context: TriggerContext, now: datetime | None = None
    ) -> bool:
        """Evaluate a rule's condition, defaulting the type to its trigger event."""
        return self.evaluate(
            rule.trigger_condition, context, now, default_type=rule.trigger_event.value
        )

    def evaluate(
        self,
        condition: TriggerCondition,
        context: TriggerContext,
        now: datetime | None = None,
        *,
        default_type: str | None = None,
    ) -> bool:
        """
        Evaluate ``condition`` against ``context``.

        Args:
            condition: Rule's trigger condition
            context: Event payload and transaction snapshot
            now: Evaluation time (UTC); defaults to the current time
            default_type: Type used when the condition has no ``type`` key

        Returns:
            True if the condition holds, False otherwise (including on error)
        """
        now = now or datetime.now(UTC)
        condition_type = condition.get("type") or default_type

        try:
            if not self._matches_filters(condition, context.transaction):
                return False

            if condition_type == TriggerEvent.STATUS_CHANGE.value:
                return self._status_change(condition, context.trigger_data)
            elif condition_type == TriggerEvent.TASK_COMPLETED.value:
                return self._task_completed(condition, context.trigger_data)
            elif condition_type == TriggerEvent.DOCUMENT_UPLOADED.value:
                return self._document_uploaded(condition, context.trigger_data)
            elif condition_type == TriggerEvent.CONTRACT_DATE_OFFSET.value:
                return self._date_offset(condition, context.transaction.get("created_at"), now)
            elif condition_type == TriggerEvent.CLOSING_DATE_OFFSET.value:
                return self._date_offset(condition, context.transaction.get("closing_date"), now)
            elif condition_type == TriggerEvent.TIME_BASED.value:
                return self._time_based(condition, now)

            logger.warning(f"Unknown trigger condition type: {condition_type!r}")
            return False
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning(
                f"Error evaluating trigger condition type={condition_type!r} "
                f"transaction={context.transaction_id}: {e}"
            )
            return False

    @staticmethod
    def _matches_filters(condition: TriggerCondition, transaction: Mapping[str, Any]) -> bool:
        for key in ("transaction_type", "service_tier"):
            expected = condition.get(key)
            if expected and transaction.get(key) != expected:
                return False
        return True

    @staticmethod
    def _status_change(condition: TriggerCondition, trigger_data: Mapping[str, Any]) -> bool:
        from_status = condition.get("from_status")
        to_status = condition.get("to_status")
        if from_status and trigger_data.get("old_status") != from_status:
            return False
        if to_status and trigger_data.get("new_status") != to_status:
            return False
        return True

    @staticmethod
    def _task_completed(condition: TriggerCondition, trigger_data: Mapping[str, Any]) -> bool:
        task = trigger_data.get("task")
        if not task:
            return False

        title_contains = condition.get("task_title_contains")
        if title_contains:
            title = task.get("title") or ""
            if title_contains.lower() not in title.lower():
                return False

        priority = condition.get("task_priority")
        if priority and task.get("priority") != priority:
            return False

        return task.get("is_completed") is True

    @staticmethod
    def _document_uploaded(condition: TriggerCondition, trigger_data: Mapping[str, Any]) -> bool:
        document = trigger_data.get("document")
        if not document:
            return False

        # Document types are not stored separately; match on the file name
        document_type = condition.get("document_type")
        if document_type:
            file_name = document.get("file_name") or ""
            return document_type.lower() in file_name.lower()

        return True

    @staticmethod
    def _date_offset(condition: TriggerCondition, reference: Any, now: datetime) -> bool:
        reference_date = _as_date(reference)
        if reference_date is None:
            return False

        offset = timedelta(days=int(condition.get("offset_days") or 0))
        if (condition.get("offset_type") or "after") == "before":
            target = reference_date - offset
        else:
            target = reference_date + offset

        return _utc(now).date() == target

    def _time_based(self, condition: TriggerCondition, now: datetime) -> bool:
        now = _utc(now)

        days_of_week = condition.get("days_of_week")
        if days_of_week:
            sunday_first = (now.weekday() + 1) % 7
            if sunday_first not in days_of_week:
                return False

        time_of_day = condition.get("time_of_day")
        if time_of_day:
            hours, minutes = (int(part) for part in time_of_day.split(":"))
            target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
            return abs(now - target) < self._time_tolerance

        return True


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _as_date(value: Any) -> date | None:
    """Coerce a stored date/datetime/ISO string to a UTC calendar date."""
    if not value:
        return None
    if isinstance(value, datetime):
        return _utc(value).date()
    if isinstance(value, date):
        return value
    parsed = datetime.fromisoformat(str(value))
    return _utc(parsed).date() if parsed.tzinfo else parsed.date()
