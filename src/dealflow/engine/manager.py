"""
Execution manager: runs one matched rule against one transaction.

Every attempt follows the same strictly ordered steps:

    create record -> mark running -> resolve template -> apply template
    -> notify -> mark completed -> audit

On failure the error handler records the failure and either schedules a
durable retry job (linear backoff) or marks the execution failed. Retries
re-enter RUNNING explicitly through RETRYING -> RUNNING, and rebuild the
trigger context from the execution's persisted metadata.

Design: Information Hiding (Parnas)
Retry accounting lives in ``handle_execution_error`` so the attempt path,
the retry worker, and manual retries share one policy implementation.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from dealflow.engine.notifier import Notifier
from dealflow.models import (
    AttemptInterruptedError,
    AuditEntry,
    AutomationRule,
    ExecutionNotFoundError,
    ExecutionStatus,
    NotFoundError,
    RetryJobStatus,
    RetryPolicy,
    RuleInactiveError,
    RuleNotFoundError,
    TemplateNotFoundError,
    TransactionNotFoundError,
    TriggerContext,
    WorkflowExecution,
    is_retryable,
)
from dealflow.services.base import (
    AuditLogSink,
    NotificationSink,
    RuleStore,
    TemplateApplier,
    TemplateStore,
    TransactionReader,
)
from dealflow.storage.base import ExecutionLedger, InvalidTransitionError

logger = logging.getLogger(__name__)

AUDIT_ENTITY = "workflow_execution"


class ExecutionError(Exception):
    """
    A rule cannot be executed as requested.

    Raised before any ledger row is written, for example when the rule is
    inactive or the context has no transaction.
    """

    pass


class ExecutionManager:
    """
    Orchestrates rule executions, retries, and manual retries.

    Example:
        manager = ExecutionManager(
            ledger,
            rules=rule_store,
            templates=template_store,
            applier=applier,
            transactions=transaction_reader,
            notifications=notification_sink,
            audit=audit_log,
        ).with_retry_policy(RetryPolicy(max_attempts=3, base_delay_ms=1000))

        execution = await manager.execute_rule(rule, context)
    """

    def __init__(
        self,
        ledger: ExecutionLedger,
        *,
        rules: RuleStore,
        templates: TemplateStore,
        applier: TemplateApplier,
        transactions: TransactionReader,
        notifications: NotificationSink,
        audit: AuditLogSink | None = None,
    ):
        self._ledger = ledger
        self._rules = rules
        self._templates = templates
        self._applier = applier
        self._transactions = transactions
        self._notifier = Notifier(notifications)
        self._audit = audit
        self._retry_policy = RetryPolicy.DEFAULT
        self._fail_fast_on_not_found = False

    def with_retry_policy(self, policy: RetryPolicy) -> ExecutionManager:
        """Set the retry budget and backoff (builder pattern)."""
        self._retry_policy = policy
        return self

    def with_fail_fast_on_not_found(self, enabled: bool = True) -> ExecutionManager:
        """Fail missing template/rule/transaction errors without retrying."""
        self._fail_fast_on_not_found = enabled
        return self

    @property
    def ledger(self) -> ExecutionLedger:
        return self._ledger

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    # ========================================================================
    # Automatic path
    # ========================================================================

    async def execute_rule(
        self, rule: AutomationRule, context: TriggerContext
    ) -> WorkflowExecution:
        """
        Create an execution for ``rule`` and run its first attempt.

        Returns:
            The completed execution

        Raises:
            ExecutionError: If the rule is inactive or the context is empty
            Exception: The attempt's error, re-raised after the ledger
                already records RETRYING or FAILED
        """
        execution = await self.create_execution(rule, context)
        return await self.run_execution(execution, rule, context)

    async def create_execution(
        self, rule: AutomationRule, context: TriggerContext
    ) -> WorkflowExecution:
        """Insert the PENDING row for a rule firing."""
        if not rule.is_active:
            raise ExecutionError(f"Rule {rule.id} ({rule.name!r}) is inactive")
        if not context.transaction_id:
            raise ExecutionError(f"Rule {rule.id}: trigger context has no transaction_id")

        execution = await self._ledger.create_execution(
            rule.id,
            context.transaction_id,
            metadata={
                "rule_name": rule.name,
                "trigger_context": dict(context.trigger_data),
            },
        )
        logger.info(
            f"Execution created: id={execution.id} rule={rule.id} "
            f"transaction={context.transaction_id}"
        )
        return execution

    async def run_execution(
        self, execution: WorkflowExecution, rule: AutomationRule, context: TriggerContext
    ) -> WorkflowExecution:
        """Run one attempt for a PENDING execution."""
        running = await self._ledger.transition(execution.id, ExecutionStatus.RUNNING)
        return await self._attempt(running, rule, context)

    async def _attempt(
        self, execution: WorkflowExecution, rule: AutomationRule, context: TriggerContext
    ) -> WorkflowExecution:
        """Steps 3-7 for an execution that is already RUNNING."""
        try:
            completed, workflow_instance_id = await self._apply_and_complete(
                execution, rule, context
            )
        except Exception as e:
            logger.error(
                f"Error executing automation rule: rule={rule.id} name={rule.name!r} "
                f"execution={execution.id} transaction={context.transaction_id}: {e}"
            )
            await self.handle_execution_error(execution.id, e)
            raise

        await self._record_audit(
            actor=context.user_id or "system",
            action="update",
            execution_id=completed.id,
            details={
                "rule_name": rule.name,
                "template_id": rule.template_id,
                "workflow_instance_id": workflow_instance_id,
                "transaction_id": context.transaction_id,
            },
        )
        logger.info(
            f"Automation rule executed successfully: rule={rule.id} name={rule.name!r} "
            f"execution={completed.id} transaction={context.transaction_id}"
        )
        return completed

    async def _apply_and_complete(
        self,
        execution: WorkflowExecution,
        rule: AutomationRule,
        context: TriggerContext,
        metadata_updates: dict[str, Any] | None = None,
    ) -> tuple[WorkflowExecution, str]:
        template = await self._templates.get_template(rule.template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template not found: {rule.template_id}")

        workflow_instance_id = await self._applier.apply(
            context.transaction_id, rule.template_id, context.user_id
        )

        # Never raises; failures are logged inside
        await self._notifier.notify_applied(rule, context, execution.id)

        completed = await self._ledger.transition(
            execution.id,
            ExecutionStatus.COMPLETED,
            metadata_updates={"workflow_instance_id": workflow_instance_id, **(metadata_updates or {})},
        )
        return completed, workflow_instance_id

    async def handle_execution_error(
        self, execution_id: str, error: BaseException
    ) -> WorkflowExecution | None:
        """
        Record a failed attempt and decide what happens next.

        The failure count becomes ``retry_count + 1``. While the policy
        allows it, the execution moves to RETRYING together with a durable
        retry job due after ``base_delay_ms * retry_count``. Otherwise, or
        if the error is not retryable, the execution is marked FAILED.

        Returns:
            Updated execution, or None if the row no longer exists
        """
        current = await self._ledger.get_execution(execution_id)
        if current is None:
            logger.error(f"Cannot record failure, execution not found: {execution_id}")
            return None
        if current.is_terminal:
            logger.warning(f"Execution {execution_id} already {current.status}, failure not recorded")
            return current

        retry_count = current.retry_count + 1
        message = _error_message(error)

        delay_ms = self._retry_policy.delay_for_attempt(retry_count)
        if self._should_retry(error) and delay_ms is not None:
            run_at = datetime.now(UTC) + timedelta(milliseconds=delay_ms)
            job = await self._ledger.schedule_retry(execution_id, retry_count, message, run_at)
            logger.warning(
                f"Scheduling execution retry: execution={execution_id} "
                f"retry_count={retry_count} delay_ms={delay_ms} job={job.job_id} error={message}"
            )
            return await self._ledger.get_execution(execution_id)

        failed = await self._ledger.transition(
            execution_id,
            ExecutionStatus.FAILED,
            error_message=message,
            retry_count=retry_count,
        )
        logger.error(
            f"Execution failed: execution={execution_id} retry_count={retry_count} "
            f"retryable={is_retryable(error)} error={message}"
        )
        return failed

    def _should_retry(self, error: BaseException) -> bool:
        if isinstance(error, NotFoundError) and self._fail_fast_on_not_found:
            return False
        return is_retryable(error)

    async def retry_execution(
        self, execution_id: str, job_id: str | None = None
    ) -> WorkflowExecution | None:
        """
        Run the scheduled retry of a RETRYING execution.

        Re-fetches the execution, its rule, and its transaction, and rebuilds
        the trigger context from persisted metadata. Lookup failures go
        through the same failure accounting as attempt failures. Attempt
        errors are not re-raised: their outcome is in the returned row.

        The claim records ``job_id`` in the row's metadata. If the same job
        comes back (its worker died and the claim was recovered) and finds
        the row still RUNNING under its id, the abandoned attempt is counted
        as a failure and rescheduled or failed by the usual policy.

        Returns:
            Execution after the attempt, or None if it no longer exists

        Raises:
            StorageError: If the ledger cannot be read or written
        """
        execution = await self._ledger.get_execution(execution_id)
        if execution is None:
            logger.error(f"Execution not found for retry: {execution_id}")
            return None

        if (
            job_id is not None
            and execution.status == ExecutionStatus.RUNNING
            and execution.metadata.get("retry_job_id") == job_id
        ):
            logger.warning(
                f"Retry job {job_id} found execution {execution_id} still running from its "
                f"abandoned attempt"
            )
            return await self.handle_execution_error(
                execution_id,
                AttemptInterruptedError(f"Retry attempt interrupted: job {job_id} was abandoned"),
            )

        if execution.status != ExecutionStatus.RETRYING:
            logger.warning(f"Skipping retry of execution {execution_id}: status is {execution.status}")
            return execution

        try:
            running = await self._ledger.transition(
                execution_id,
                ExecutionStatus.RUNNING,
                metadata_updates={"retry_job_id": job_id} if job_id is not None else None,
            )
        except InvalidTransitionError as e:
            logger.warning(f"Retry of execution {execution_id} already claimed: {e}")
            return await self._ledger.get_execution(execution_id)

        try:
            rule, context = await self._load_for_retry(running)
        except Exception as e:
            logger.error(f"Error retrying execution {execution_id}: {e}")
            return await self.handle_execution_error(execution_id, e)

        try:
            return await self._attempt(running, rule, context)
        except Exception:
            return await self._ledger.get_execution(execution_id)

    async def recover_stalled(self, older_than: timedelta, now: datetime | None = None) -> int:
        """
        Settle executions left in RUNNING by a process that died mid-attempt.

        A row counts as stalled when it has not been written for
        ``older_than``. Rows whose retry job is still queued or claimed are
        left to that job. A stalled manual attempt goes back to FAILED, as a
        failed manual attempt would. Any other stalled attempt goes through
        ``handle_execution_error``.

        Returns:
            Number of executions moved out of RUNNING
        """
        now = now or datetime.now(UTC)
        cutoff = now - older_than

        recovered = 0
        for execution in await self._ledger.list_executions(status=ExecutionStatus.RUNNING):
            last_write = execution.updated_at or execution.executed_at
            if last_write >= cutoff:
                continue

            job_id = execution.metadata.get("retry_job_id")
            if job_id is not None:
                job = await self._ledger.get_retry(job_id)
                if job is not None and job.status != RetryJobStatus.DONE:
                    continue

            error = AttemptInterruptedError(
                f"Attempt interrupted: execution {execution.id} idle in running "
                f"since {last_write.isoformat()}"
            )
            try:
                if "manual_retry_count" in execution.metadata:
                    # Manual attempts never draw on the automatic retry budget
                    await self._ledger.transition(
                        execution.id,
                        ExecutionStatus.FAILED,
                        error_message=str(error),
                        metadata_updates={
                            "retry_failed_at": now.isoformat(),
                            "retry_error": str(error),
                        },
                    )
                else:
                    await self.handle_execution_error(execution.id, error)
            except InvalidTransitionError as e:
                logger.warning(f"Stalled execution {execution.id} changed while recovering: {e}")
                continue

            logger.warning(f"Recovered stalled execution {execution.id}")
            recovered += 1

        return recovered

    async def _load_for_retry(
        self, execution: WorkflowExecution, user_id: str | None = None, require_active: bool = True
    ) -> tuple[AutomationRule, TriggerContext]:
        rule = await self._rules.get_rule(execution.rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule not found for retry: {execution.rule_id}")
        if require_active and not rule.is_active:
            raise RuleInactiveError(f"Rule {rule.id} ({rule.name!r}) was deactivated")

        transaction = await self._transactions.get_transaction(execution.transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(
                f"Transaction not found for retry: {execution.transaction_id}"
            )

        return rule, TriggerContext.from_execution(execution, transaction, user_id)

    # ========================================================================
    # Manual path
    # ========================================================================

    async def manual_retry(
        self, execution_id: str, user_id: str | None = None
    ) -> WorkflowExecution:
        """
        Operator retry of a FAILED execution.

        Claims the row with one conditional FAILED -> RUNNING write, so among
        concurrent callers exactly one proceeds. Runs a single attempt that
        ends COMPLETED or back in FAILED, and leaves retry_count unchanged.
        If the process dies mid-attempt, ``recover_stalled`` returns the row
        to FAILED.

        Returns:
            The completed execution

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            InvalidTransitionError: If it is not FAILED or another caller won
            Exception: The attempt's error, after the row is FAILED again
        """
        execution = await self._ledger.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Failed execution not found: {execution_id}")
        if execution.status != ExecutionStatus.FAILED:
            raise InvalidTransitionError(
                f"Execution {execution_id} is {execution.status}, only failed executions can be retried"
            )

        manual_retry_count = int(execution.metadata.get("manual_retry_count", 0)) + 1
        running = await self._ledger.transition(
            execution_id,
            ExecutionStatus.RUNNING,
            manual=True,
            metadata_updates={
                "manual_retry_count": manual_retry_count,
                "retried_at": datetime.now(UTC).isoformat(),
                # Releases the row from any earlier retry job
                "retry_job_id": None,
            },
        )

        actor = user_id or "system"
        await self._record_audit(
            actor=actor,
            action="retry_attempted",
            execution_id=execution_id,
            details={
                "manual_retry_count": manual_retry_count,
                "original_error": execution.error_message,
            },
        )
        logger.info(f"Manual retry {manual_retry_count} of execution {execution_id} by {actor}")

        try:
            rule, context = await self._load_for_retry(running, user_id, require_active=False)
            completed, workflow_instance_id = await self._apply_and_complete(
                running, rule, context, metadata_updates={"retry_successful": True}
            )
        except Exception as e:
            message = _error_message(e)
            await self._ledger.transition(
                execution_id,
                ExecutionStatus.FAILED,
                error_message=message,
                metadata_updates={
                    "retry_failed_at": datetime.now(UTC).isoformat(),
                    "retry_error": message,
                },
            )
            await self._record_audit(
                actor=actor,
                action="retry_failed",
                execution_id=execution_id,
                details={"manual_retry_count": manual_retry_count, "error": message},
            )
            logger.error(f"Manual retry of execution {execution_id} failed: {message}")
            raise

        await self._record_audit(
            actor=actor,
            action="retry_successful",
            execution_id=execution_id,
            details={
                "manual_retry_count": manual_retry_count,
                "workflow_instance_id": workflow_instance_id,
            },
        )
        logger.info(f"Manual retry of execution {execution_id} completed")
        return completed

    async def _record_audit(
        self, actor: str, action: str, execution_id: str, details: dict[str, Any]
    ) -> None:
        if self._audit is None:
            return

        entry = AuditEntry(
            actor=actor,
            action=action,
            entity=AUDIT_ENTITY,
            entity_id=execution_id,
            details=details,
        )
        try:
            await self._audit.append(entry)
        except Exception as e:
            logger.warning(f"Audit log write failed for execution {execution_id}: {e}")


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__
