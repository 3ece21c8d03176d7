"""Automation rule: a trigger event bound to a workflow template."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dealflow.models.status import TriggerEvent

TriggerCondition = dict[str, Any]
"""Structured predicate evaluated against ``TriggerContext.trigger_data``.

Recognised keys depend on ``type`` (defaults to the rule's trigger_event):
from_status, to_status, task_title_contains, task_priority, document_type,
offset_days, offset_type, time_of_day, days_of_week, transaction_type,
service_tier.
"""


@dataclass(frozen=True)
class AutomationRule:
    """Configured trigger → template binding.

    Rules are authored and toggled outside the engine; the engine only reads
    them and never mutates one.
    """

    id: str
    name: str
    trigger_event: TriggerEvent
    template_id: str
    trigger_condition: TriggerCondition = field(default_factory=dict)
    is_active: bool = True
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> AutomationRule:
        """Build a rule from a raw store row.

        ``trigger_condition`` may arrive as a JSON string or a mapping, and
        ``trigger_event`` as a plain string.
        """
        condition = record.get("trigger_condition") or {}
        if isinstance(condition, str):
            condition = json.loads(condition) if condition else {}

        event = record["trigger_event"]
        if not isinstance(event, TriggerEvent):
            event = TriggerEvent(event)

        return cls(
            id=record["id"],
            name=record["name"],
            trigger_event=event,
            template_id=record["template_id"],
            trigger_condition=dict(condition),
            is_active=bool(record.get("is_active", True)),
            created_by=record.get("created_by"),
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )

    @property
    def condition_type(self) -> str:
        """Condition type, falling back to the trigger event."""
        return self.trigger_condition.get("type") or self.trigger_event.value
