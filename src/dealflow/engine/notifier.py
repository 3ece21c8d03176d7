"""Best-effort notification dispatch after a successful template application.

Design: Information Hiding
Notification delivery is isolated here so a failing sink can never reach
the execution state machine: every error is logged and swallowed.
"""

from __future__ import annotations

import logging

from dealflow.models import AutomationRule, Notification, TriggerContext
from dealflow.services.base import NotificationSink

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, sink: NotificationSink):
        self._sink = sink

    @staticmethod
    def build_message(rule: AutomationRule, context: TriggerContext) -> str:
        return (
            f'Workflow "{rule.name}" has been automatically applied to transaction '
            f"{context.display_address}"
        )

    async def notify_applied(
        self, rule: AutomationRule, context: TriggerContext, execution_id: str
    ) -> Notification | None:
        """
        Send one unread notification to the transaction's agent.

        Returns:
            The stored notification, or None if there was no recipient or
            the sink failed (the failure is logged, never raised)
        """
        recipient = context.agent_id
        if not recipient:
            logger.warning(
                f"No agent to notify: rule={rule.id} execution={execution_id} "
                f"transaction={context.transaction_id}"
            )
            return None

        notification = Notification(
            user_id=recipient,
            transaction_id=context.transaction_id,
            message=self.build_message(rule, context),
            is_read=False,
        )

        try:
            await self._sink.insert(notification)
        except Exception as e:
            logger.error(
                f"Error creating notification: rule={rule.id} execution={execution_id}: {e}"
            )
            return None

        logger.info(f"Notification sent for rule {rule.name!r} to {recipient}")
        return notification
