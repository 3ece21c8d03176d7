"""Ledger contract tests, run against every local backend."""

from datetime import UTC, datetime, timedelta

import pytest

from dealflow.models import ExecutionNotFoundError, ExecutionStatus, RetryJobStatus
from dealflow.storage import InvalidTransitionError, StorageError


def _whole_second(offset_seconds: float = 0) -> datetime:
    return datetime.now(UTC).replace(microsecond=0) + timedelta(seconds=offset_seconds)


async def _failed_once(ledger, retry_count=1):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    return execution, await ledger.transition(
        execution.id, ExecutionStatus.FAILED, error_message="boom", retry_count=retry_count
    )


# ============================================================================
# Execution rows
# ============================================================================


async def test_create_execution_starts_pending(ledger):
    metadata = {"rule_name": "Intake", "trigger_context": {"new_status": "active"}}
    execution = await ledger.create_execution("rule-1", "tx-1", metadata=metadata)

    assert execution.status == ExecutionStatus.PENDING
    assert execution.retry_count == 0
    assert execution.completed_at is None
    assert execution.error_message is None
    assert execution.metadata == metadata

    fetched = await ledger.get_execution(execution.id)
    assert fetched.id == execution.id
    assert fetched.rule_name == "Intake"
    assert fetched.trigger_data == {"new_status": "active"}


async def test_get_unknown_execution(ledger):
    assert await ledger.get_execution("does-not-exist") is None


async def test_snapshots_are_detached(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1", metadata={"nested": {"a": 1}})
    execution.metadata["nested"]["a"] = 99

    fetched = await ledger.get_execution(execution.id)
    assert fetched.metadata == {"nested": {"a": 1}}


async def test_success_path_sets_completed_at(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    running = await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    assert running.status == ExecutionStatus.RUNNING
    assert running.completed_at is None

    completed = await ledger.transition(
        execution.id,
        ExecutionStatus.COMPLETED,
        metadata_updates={"workflow_instance_id": "wf-1"},
    )
    assert completed.status == ExecutionStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.metadata["workflow_instance_id"] == "wf-1"

    fetched = await ledger.get_execution(execution.id)
    assert fetched.status == ExecutionStatus.COMPLETED
    assert fetched.completed_at is not None


async def test_terminal_rows_reject_writes(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    await ledger.transition(execution.id, ExecutionStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        await ledger.transition(execution.id, ExecutionStatus.FAILED, error_message="late")

    fetched = await ledger.get_execution(execution.id)
    assert fetched.status == ExecutionStatus.COMPLETED
    assert fetched.error_message is None


async def test_failure_requires_error_message(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(execution.id, ExecutionStatus.FAILED)

    assert (await ledger.get_execution(execution.id)).status == ExecutionStatus.RUNNING


async def test_running_clears_previous_error(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    await ledger.schedule_retry(execution.id, 1, "timeout", _whole_second())

    running = await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    assert running.error_message is None
    assert running.retry_count == 1


async def test_retry_count_never_decreases(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    await ledger.schedule_retry(execution.id, 2, "timeout", _whole_second())

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(
            execution.id, ExecutionStatus.FAILED, error_message="x", retry_count=1
        )


async def test_retry_count_capped(ledger):
    """Fixture ledgers are built with max_retry_count=3."""
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(
            execution.id, ExecutionStatus.FAILED, error_message="x", retry_count=4
        )

    failed = await ledger.transition(
        execution.id, ExecutionStatus.FAILED, error_message="x", retry_count=3
    )
    assert failed.retry_count == 3


async def test_transition_unknown_execution(ledger):
    with pytest.raises(ExecutionNotFoundError):
        await ledger.transition("missing", ExecutionStatus.RUNNING)


async def test_failed_reopens_only_manually(ledger):
    execution, failed = await _failed_once(ledger)
    assert failed.status == ExecutionStatus.FAILED

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    with pytest.raises(InvalidTransitionError):
        await ledger.transition(
            execution.id, ExecutionStatus.RETRYING, error_message="again", manual=True
        )

    reopened = await ledger.transition(
        execution.id,
        ExecutionStatus.RUNNING,
        manual=True,
        metadata_updates={"manual_retry_count": 1},
    )
    assert reopened.status == ExecutionStatus.RUNNING
    assert reopened.error_message is None
    assert reopened.retry_count == 1
    assert reopened.metadata["manual_retry_count"] == 1


async def test_second_manual_claim_loses(ledger):
    execution, _ = await _failed_once(ledger)
    await ledger.transition(execution.id, ExecutionStatus.RUNNING, manual=True)

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(execution.id, ExecutionStatus.RUNNING, manual=True)


async def test_list_executions_filters(ledger):
    a = await ledger.create_execution("rule-a", "tx-1")
    b = await ledger.create_execution("rule-b", "tx-1")
    c = await ledger.create_execution("rule-a", "tx-2")
    await ledger.transition(c.id, ExecutionStatus.RUNNING)

    by_rule = await ledger.list_executions(rule_id="rule-a")
    assert {e.id for e in by_rule} == {a.id, c.id}

    by_transaction = await ledger.list_executions(transaction_id="tx-1")
    assert [e.id for e in by_transaction] == [a.id, b.id]

    running = await ledger.list_executions(status=ExecutionStatus.RUNNING)
    assert [e.id for e in running] == [c.id]

    combined = await ledger.list_executions(rule_id="rule-a", transaction_id="tx-1")
    assert [e.id for e in combined] == [a.id]


async def test_list_executions_time_window(ledger):
    execution = await ledger.create_execution("rule-a", "tx-1")
    start = execution.executed_at - timedelta(seconds=1)

    inside = await ledger.list_executions(
        executed_after=start, executed_before=start + timedelta(days=1)
    )
    assert [e.id for e in inside] == [execution.id]

    tomorrow = await ledger.list_executions(executed_after=start + timedelta(days=1))
    assert tomorrow == []

    before = await ledger.list_executions(executed_before=start)
    assert before == []


# ============================================================================
# Retry queue
# ============================================================================


async def test_schedule_retry_records_failure_and_job(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    run_at = _whole_second(5)

    job = await ledger.schedule_retry(execution.id, 1, "template service timeout", run_at)

    assert job.execution_id == execution.id
    assert job.attempt == 1
    assert job.status == RetryJobStatus.PENDING

    row = await ledger.get_execution(execution.id)
    assert row.status == ExecutionStatus.RETRYING
    assert row.retry_count == 1
    assert row.error_message == "template service timeout"

    assert await ledger.next_retry_time() == run_at
    assert [j.job_id for j in await ledger.list_retries(execution.id)] == [job.job_id]


async def test_schedule_retry_rejected_for_terminal_row(ledger):
    execution, _ = await _failed_once(ledger)

    with pytest.raises(InvalidTransitionError):
        await ledger.schedule_retry(execution.id, 2, "again", _whole_second())

    assert await ledger.list_retries(execution.id) == []
    assert await ledger.next_retry_time() is None


async def test_claim_respects_run_at(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    run_at = _whole_second(10)
    job = await ledger.schedule_retry(execution.id, 1, "timeout", run_at)

    assert await ledger.claim_due_retry("worker-1", now=run_at - timedelta(seconds=1)) is None

    claimed = await ledger.claim_due_retry("worker-1", now=run_at)
    assert claimed.job_id == job.job_id
    assert claimed.status == RetryJobStatus.CLAIMED
    assert claimed.locked_by == "worker-1"

    # One winner
    assert await ledger.claim_due_retry("worker-2", now=run_at) is None
    assert await ledger.next_retry_time() is None


async def test_claim_oldest_first(ledger):
    first = await ledger.create_execution("rule-1", "tx-1")
    second = await ledger.create_execution("rule-1", "tx-2")
    for execution in (first, second):
        await ledger.transition(execution.id, ExecutionStatus.RUNNING)

    await ledger.schedule_retry(second.id, 1, "x", _whole_second(2))
    await ledger.schedule_retry(first.id, 1, "x", _whole_second(1))

    now = _whole_second(60)
    claimed = await ledger.claim_due_retry("worker-1", now=now)
    assert claimed.execution_id == first.id
    claimed = await ledger.claim_due_retry("worker-1", now=now)
    assert claimed.execution_id == second.id


async def test_complete_retry(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    job = await ledger.schedule_retry(execution.id, 1, "x", _whole_second())
    await ledger.claim_due_retry("worker-1", now=_whole_second(1))

    await ledger.complete_retry(job.job_id)

    done = await ledger.get_retry(job.job_id)
    assert done.status == RetryJobStatus.DONE
    assert done.completed_at is not None


async def test_complete_unknown_retry(ledger):
    with pytest.raises(StorageError):
        await ledger.complete_retry("no-such-job")


async def test_recover_stale_claims(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    job = await ledger.schedule_retry(execution.id, 1, "x", _whole_second())

    claimed_at = _whole_second(1)
    await ledger.claim_due_retry("crashed-worker", now=claimed_at)

    # Fresh claim is left alone
    assert await ledger.recover_stale_retries(timedelta(minutes=5), now=claimed_at) == 0

    recovered = await ledger.recover_stale_retries(
        timedelta(minutes=5), now=claimed_at + timedelta(minutes=6)
    )
    assert recovered == 1

    job = await ledger.get_retry(job.job_id)
    assert job.status == RetryJobStatus.PENDING
    assert job.locked_by is None

    reclaimed = await ledger.claim_due_retry("worker-2", now=claimed_at + timedelta(minutes=6))
    assert reclaimed.locked_by == "worker-2"


async def test_work_notify_set_on_schedule(ledger):
    notify = ledger.work_notify()
    notify.clear()

    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    await ledger.schedule_retry(execution.id, 1, "x", _whole_second())

    assert notify.is_set()


async def test_reset_clears_everything(ledger):
    execution = await ledger.create_execution("rule-1", "tx-1")
    await ledger.transition(execution.id, ExecutionStatus.RUNNING)
    await ledger.schedule_retry(execution.id, 1, "x", _whole_second())

    await ledger.reset()

    assert await ledger.list_executions() == []
    assert await ledger.list_retries() == []
