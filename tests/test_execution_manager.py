"""Tests for rule execution, retry accounting, and manual retries."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import FailingNotificationSink, FlakyApplier, build_engine, later

from dealflow.engine import ExecutionError
from dealflow.models import (
    ExecutionNotFoundError,
    ExecutionStatus,
    RetryableError,
    RetryPolicy,
    RetryJobStatus,
    TemplateNotFoundError,
)
from dealflow.storage import InvalidTransitionError, StorageError


class PermanentApplyError(RetryableError):
    def is_retryable(self) -> bool:
        return False


async def _only_execution(engine, rule):
    executions = await engine.ledger.list_executions(rule_id=rule.id)
    assert len(executions) == 1
    return executions[0]


# ============================================================================
# First attempt
# ============================================================================


async def test_successful_execution(engine):
    rule = engine.add_rule()
    context = engine.context()

    execution = await engine.manager.execute_rule(rule, context)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.retry_count == 0
    assert execution.completed_at is not None
    assert execution.error_message is None
    assert execution.metadata["rule_name"] == rule.name
    assert execution.metadata["trigger_context"] == context.trigger_data
    assert execution.metadata["workflow_instance_id"] == "wf-1"

    assert engine.applier.calls == [("tx-1", "tpl-intake", None)]


async def test_success_notifies_agent_once(engine):
    rule = engine.add_rule(name="Under contract kickoff")
    await engine.manager.execute_rule(rule, engine.context())

    [notification] = engine.notifications.notifications
    assert notification.user_id == "agent-7"
    assert notification.transaction_id == "tx-1"
    assert notification.is_read is False
    assert notification.message == (
        'Workflow "Under contract kickoff" has been automatically applied to transaction '
        "12 Harbor View Dr"
    )


async def test_success_writes_audit_entry(engine):
    rule = engine.add_rule()
    execution = await engine.manager.execute_rule(rule, engine.context())

    [entry] = engine.audit.entries
    assert entry.actor == "system"
    assert entry.action == "update"
    assert entry.entity == "workflow_execution"
    assert entry.entity_id == execution.id
    assert entry.details == {
        "rule_name": rule.name,
        "template_id": "tpl-intake",
        "workflow_instance_id": "wf-1",
        "transaction_id": "tx-1",
    }


async def test_user_id_is_applied_by_and_actor(engine):
    rule = engine.add_rule()
    context = replace(engine.context(), user_id="coordinator-3")
    await engine.manager.execute_rule(rule, context)

    assert engine.applier.calls == [("tx-1", "tpl-intake", "coordinator-3")]
    assert engine.audit.entries[0].actor == "coordinator-3"


async def test_inactive_rule_is_rejected_before_any_write(engine):
    rule = engine.add_rule(is_active=False)

    with pytest.raises(ExecutionError):
        await engine.manager.execute_rule(rule, engine.context())

    assert await engine.ledger.list_executions() == []


async def test_no_agent_skips_notification(engine):
    rule = engine.add_rule()
    context = engine.context()
    context = replace(context, transaction={"id": "tx-1", "property_address": "12 Harbor View Dr"})

    execution = await engine.manager.execute_rule(rule, context)

    assert execution.status == ExecutionStatus.COMPLETED
    assert engine.notifications.notifications == []


async def test_failure_rethrows_after_recording(engine):
    engine.applier.failures = 1
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.RETRYING
    assert execution.retry_count == 1
    assert execution.error_message == "apply failed on attempt 1"

    [job] = await engine.ledger.list_retries(execution.id)
    assert job.attempt == 1
    assert job.status == RetryJobStatus.PENDING


async def test_non_retryable_error_fails_immediately(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=1, error=PermanentApplyError))
    rule = engine.add_rule()

    with pytest.raises(PermanentApplyError):
        await engine.manager.execute_rule(rule, engine.context())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 1
    assert await engine.ledger.list_retries(execution.id) == []


async def test_backoff_is_linear(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=1))
    engine.manager.with_retry_policy(RetryPolicy(max_attempts=3, base_delay_ms=1000))
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())

    execution = await _only_execution(engine, rule)
    [job] = await engine.ledger.list_retries(execution.id)
    delay = (job.run_at - execution.updated_at).total_seconds()
    assert 0.9 <= delay <= 1.1


# ============================================================================
# Scenarios
# ============================================================================


async def test_scenario_a_succeeds_on_third_attempt(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=2))
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())

    processed = await engine.worker().run_pending(now=later())
    assert processed == 2

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.retry_count == 2
    assert execution.completed_at is not None
    assert execution.error_message is None
    assert len(engine.notifications.notifications) == 1
    assert len(engine.applier.calls) == 3


async def test_scenario_b_fails_after_three_attempts(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=10))
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())
    await engine.worker().run_pending(now=later())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 3
    assert execution.error_message == "apply failed on attempt 3"
    assert execution.completed_at is None
    assert engine.notifications.notifications == []
    assert len(engine.applier.calls) == 3

    jobs = await engine.ledger.list_retries(execution.id)
    assert sorted(job.attempt for job in jobs) == [1, 2]
    assert all(job.status == RetryJobStatus.DONE for job in jobs)


async def test_scenario_c_missing_template_uses_retry_budget(engine):
    rule = engine.add_rule(template_id="tpl-missing")

    with pytest.raises(TemplateNotFoundError):
        await engine.manager.execute_rule(rule, engine.context())
    await engine.worker().run_pending(now=later())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 3
    assert execution.error_message == "Template not found: tpl-missing"
    assert engine.applier.calls == []


async def test_missing_template_fails_fast_when_configured(engine):
    engine.manager.with_fail_fast_on_not_found()
    rule = engine.add_rule(template_id="tpl-missing")

    with pytest.raises(TemplateNotFoundError):
        await engine.manager.execute_rule(rule, engine.context())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 1
    assert await engine.ledger.list_retries(execution.id) == []


async def test_scenario_d_notification_failure_is_swallowed(ledger):
    sink = FailingNotificationSink()
    engine = build_engine(ledger, notifications=sink)
    rule = engine.add_rule()

    execution = await engine.manager.execute_rule(rule, engine.context())

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.error_message is None
    assert sink.attempts == 1


async def test_scenario_e_independent_rules(engine):
    healthy = engine.add_rule(name="Kickoff", template_id="tpl-intake")
    broken = engine.add_rule(name="Broken", template_id="tpl-missing")

    results = await engine.dispatcher().dispatch(healthy.trigger_event, engine.context())

    by_rule = {result.rule.id: result for result in results}
    assert set(by_rule) == {healthy.id, broken.id}
    assert by_rule[healthy.id].succeeded
    assert by_rule[healthy.id].execution.status == ExecutionStatus.COMPLETED
    assert not by_rule[broken.id].succeeded
    assert isinstance(by_rule[broken.id].error, TemplateNotFoundError)
    assert by_rule[broken.id].execution.status == ExecutionStatus.RETRYING

    executions = await engine.ledger.list_executions(transaction_id="tx-1")
    assert len({e.id for e in executions}) == 2


# ============================================================================
# Retry path
# ============================================================================


async def test_retry_preserves_trigger_data(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=1))
    rule = engine.add_rule()
    context = engine.context(old_status="intake", new_status="active", changed_by="agent-7")

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, context)
    await engine.worker().run_pending(now=later())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.trigger_data == context.trigger_data


async def test_retry_with_deleted_rule_is_accounted(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=1))
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())
    engine.rules.remove(rule.id)
    await engine.worker().run_pending(now=later())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 3
    assert execution.error_message == f"Rule not found for retry: {rule.id}"


async def test_retry_with_deleted_transaction_is_accounted(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=1))
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())
    engine.transactions.remove("tx-1")
    await engine.worker().run_pending(now=later())

    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "Transaction not found for retry: tx-1"


async def test_retry_of_deactivated_rule_fails_without_more_retries(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=1))
    rule = engine.add_rule()

    with pytest.raises(ConnectionError):
        await engine.manager.execute_rule(rule, engine.context())
    engine.rules.add(replace(rule, is_active=False))
    processed = await engine.worker().run_pending(now=later())

    assert processed == 1
    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 2
    assert len(engine.applier.calls) == 1


async def test_retry_execution_skips_rows_not_retrying(engine):
    rule = engine.add_rule()
    execution = await engine.manager.execute_rule(rule, engine.context())

    result = await engine.manager.retry_execution(execution.id)

    assert result.status == ExecutionStatus.COMPLETED
    assert len(engine.applier.calls) == 1


async def test_retry_execution_of_missing_row(engine):
    assert await engine.manager.retry_execution("missing") is None


# ============================================================================
# Manual retry
# ============================================================================


async def _exhausted(engine, rule):
    with pytest.raises(Exception):
        await engine.manager.execute_rule(rule, engine.context())
    await engine.worker().run_pending(now=later())
    execution = await _only_execution(engine, rule)
    assert execution.status == ExecutionStatus.FAILED
    return execution


async def test_manual_retry_completes_failed_execution(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=3))
    rule = engine.add_rule()
    failed = await _exhausted(engine, rule)

    completed = await engine.manager.manual_retry(failed.id, user_id="coordinator-3")

    assert completed.status == ExecutionStatus.COMPLETED
    assert completed.retry_count == 3
    assert completed.error_message is None
    assert completed.metadata["manual_retry_count"] == 1
    assert completed.metadata["retry_successful"] is True
    assert "retried_at" in completed.metadata
    assert engine.applier.calls[-1] == ("tx-1", "tpl-intake", "coordinator-3")
    assert len(engine.notifications.notifications) == 1

    actions = [entry.action for entry in engine.audit.entries]
    assert actions == ["retry_attempted", "retry_successful"]
    assert engine.audit.entries[0].details["original_error"] == "apply failed on attempt 3"


async def test_manual_retry_failure_returns_to_failed(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=10))
    rule = engine.add_rule()
    failed = await _exhausted(engine, rule)

    with pytest.raises(ConnectionError):
        await engine.manager.manual_retry(failed.id)

    execution = await engine.ledger.get_execution(failed.id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 3
    assert execution.error_message == "apply failed on attempt 4"
    assert execution.metadata["retry_error"] == "apply failed on attempt 4"
    assert [entry.action for entry in engine.audit.entries] == ["retry_attempted", "retry_failed"]
    assert await engine.ledger.list_retries(failed.id) != []
    assert all(
        job.status == RetryJobStatus.DONE for job in await engine.ledger.list_retries(failed.id)
    )


async def test_concurrent_manual_retries_complete_once(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=3))
    rule = engine.add_rule()
    failed = await _exhausted(engine, rule)

    results = await asyncio.gather(
        engine.manager.manual_retry(failed.id),
        engine.manager.manual_retry(failed.id),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, BaseException)]
    assert len(winners) == 1
    assert winners[0].status == ExecutionStatus.COMPLETED
    assert len(losers) == 1
    assert isinstance(losers[0], InvalidTransitionError)
    assert len(engine.applier.calls) == 4


class OperatorProcessCrash(BaseException):
    pass


async def test_crashed_manual_retry_returns_to_failed(ledger):
    engine = build_engine(ledger, applier=FlakyApplier(failures=3))
    rule = engine.add_rule()
    failed = await _exhausted(engine, rule)

    engine.applier.failures = 4
    engine.applier.error = OperatorProcessCrash
    with pytest.raises(OperatorProcessCrash):
        await engine.manager.manual_retry(failed.id)

    stuck = await engine.ledger.get_execution(failed.id)
    assert stuck.status == ExecutionStatus.RUNNING
    assert stuck.metadata.get("retry_job_id") is None

    # A live attempt is left alone until it has been idle for the threshold
    assert await engine.manager.recover_stalled(timedelta(minutes=5)) == 0
    assert await engine.manager.recover_stalled(timedelta(minutes=5), now=later(600)) == 1

    execution = await engine.ledger.get_execution(failed.id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 3
    assert "interrupted" in execution.error_message

    completed = await engine.manager.manual_retry(failed.id)
    assert completed.status == ExecutionStatus.COMPLETED
    assert completed.metadata["manual_retry_count"] == 2


async def test_unrecorded_manual_failure_is_recoverable(ledger, monkeypatch):
    engine = build_engine(ledger, applier=FlakyApplier(failures=4))
    rule = engine.add_rule()
    failed = await _exhausted(engine, rule)

    record_failure = ledger.transition

    async def ledger_down_for_failures(execution_id, to_status, **kwargs):
        if to_status == ExecutionStatus.FAILED:
            raise StorageError("ledger unavailable")
        return await record_failure(execution_id, to_status, **kwargs)

    monkeypatch.setattr(ledger, "transition", ledger_down_for_failures)
    with pytest.raises(StorageError):
        await engine.manager.manual_retry(failed.id)
    monkeypatch.undo()

    assert (await ledger.get_execution(failed.id)).status == ExecutionStatus.RUNNING
    assert await engine.manager.recover_stalled(timedelta(minutes=5), now=later(600)) == 1

    execution = await ledger.get_execution(failed.id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.retry_count == 3


async def test_manual_retry_requires_failed_status(engine):
    rule = engine.add_rule()
    execution = await engine.manager.execute_rule(rule, engine.context())

    with pytest.raises(InvalidTransitionError):
        await engine.manager.manual_retry(execution.id)


async def test_manual_retry_unknown_execution(engine):
    with pytest.raises(ExecutionNotFoundError):
        await engine.manager.manual_retry("missing")


async def test_audit_failure_does_not_fail_execution(engine):
    class BrokenAudit:
        async def append(self, entry):
            raise RuntimeError("audit table locked")

    engine.manager._audit = BrokenAudit()
    rule = engine.add_rule()

    execution = await engine.manager.execute_rule(rule, engine.context())
    assert execution.status == ExecutionStatus.COMPLETED
