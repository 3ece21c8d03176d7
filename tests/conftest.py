"""
Pytest configuration and fixtures for dealflow tests.

Provides ledger fixtures for every backend, in-memory collaborators, and a
wired-up execution manager.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from hypothesis import strategies as st

from dealflow.engine import Dispatcher, ExecutionManager, RetryWorker, RuleMatcher
from dealflow.models import AutomationRule, RetryPolicy, TriggerContext, TriggerEvent
from dealflow.services import (
    InMemoryAuditLog,
    InMemoryNotificationSink,
    InMemoryRuleStore,
    InMemoryTemplateStore,
    InMemoryTransactionReader,
)
from dealflow.storage import ExecutionLedger, InMemoryExecutionLedger, SqliteExecutionLedger

# Zero backoff so a worker drain at "now" picks up every scheduled retry
FAST_RETRIES = RetryPolicy(max_attempts=3, base_delay_ms=0)


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


@pytest.fixture
async def in_memory_ledger() -> AsyncGenerator[InMemoryExecutionLedger, None]:
    ledger = InMemoryExecutionLedger(max_retry_count=3)
    yield ledger
    await ledger.reset()


@pytest.fixture
async def sqlite_memory_ledger() -> AsyncGenerator[SqliteExecutionLedger, None]:
    """Async SQLite in-memory ledger with automatic cleanup."""
    ledger = SqliteExecutionLedger(":memory:", max_retry_count=3)
    await ledger.connect()
    yield ledger
    await ledger.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture(params=["memory", "sqlite"])
async def ledger(request) -> AsyncGenerator[ExecutionLedger, None]:
    """Every ledger backend that runs without external services."""
    if request.param == "memory":
        backend: ExecutionLedger = InMemoryExecutionLedger(max_retry_count=3)
    else:
        backend = await SqliteExecutionLedger.in_memory(max_retry_count=3)
    yield backend
    await backend.close()


# Collaborator doubles


class FlakyApplier:
    """Template applier that fails its first ``failures`` calls."""

    def __init__(self, failures: int = 0, error: type[Exception] = ConnectionError):
        self.failures = failures
        self.error = error
        self.calls: list[tuple[str, str, str | None]] = []

    async def apply(self, transaction_id: str, template_id: str, applied_by: str | None) -> str:
        self.calls.append((transaction_id, template_id, applied_by))
        if len(self.calls) <= self.failures:
            raise self.error(f"apply failed on attempt {len(self.calls)}")
        return f"wf-{len(self.calls)}"


class FailingNotificationSink:
    def __init__(self):
        self.attempts = 0

    async def insert(self, notification) -> None:
        self.attempts += 1
        raise RuntimeError("notifications table unavailable")


@dataclass
class Engine:
    """Manager plus every collaborator, for assertions."""

    ledger: ExecutionLedger
    rules: InMemoryRuleStore
    templates: InMemoryTemplateStore
    applier: FlakyApplier
    transactions: InMemoryTransactionReader
    notifications: InMemoryNotificationSink
    audit: InMemoryAuditLog
    manager: ExecutionManager

    def add_rule(
        self,
        name: str = "Intake checklist",
        trigger_event: TriggerEvent = TriggerEvent.STATUS_CHANGE,
        template_id: str = "tpl-intake",
        condition: dict | None = None,
        is_active: bool = True,
    ) -> AutomationRule:
        rule = AutomationRule(
            id=str(uuid4()),
            name=name,
            trigger_event=trigger_event,
            template_id=template_id,
            trigger_condition=condition or {},
            is_active=is_active,
        )
        return self.rules.add(rule)

    def context(self, transaction_id: str = "tx-1", **trigger_data) -> TriggerContext:
        transaction = {
            "id": transaction_id,
            "status": "active",
            "agent_id": "agent-7",
            "property_address": "12 Harbor View Dr",
        }
        return TriggerContext(
            transaction_id=transaction_id,
            transaction=transaction,
            trigger_data=trigger_data or {"old_status": "intake", "new_status": "active"},
        )

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(RuleMatcher(self.rules), self.manager)

    def worker(self) -> RetryWorker:
        return RetryWorker(self.ledger, self.manager, "test-worker")


def build_engine(ledger: ExecutionLedger, applier: FlakyApplier | None = None, notifications=None) -> Engine:
    templates = InMemoryTemplateStore({"tpl-intake": {"id": "tpl-intake", "tasks": ["Order title"]}})
    rules = InMemoryRuleStore()
    transactions = InMemoryTransactionReader(
        [
            {
                "id": "tx-1",
                "status": "active",
                "agent_id": "agent-7",
                "property_address": "12 Harbor View Dr",
            },
            {
                "id": "tx-2",
                "status": "intake",
                "agent_id": "agent-9",
                "property_address": "4 Mill Creek Ln",
            },
        ]
    )
    applier = applier or FlakyApplier()
    sink = notifications if notifications is not None else InMemoryNotificationSink()
    audit = InMemoryAuditLog()
    manager = ExecutionManager(
        ledger,
        rules=rules,
        templates=templates,
        applier=applier,
        transactions=transactions,
        notifications=sink,
        audit=audit,
    ).with_retry_policy(FAST_RETRIES)
    return Engine(ledger, rules, templates, applier, transactions, sink, audit, manager)


@pytest.fixture
def engine(ledger) -> Engine:
    return build_engine(ledger)


def later(seconds: float = 3600) -> datetime:
    """A time after every retry scheduled by a test is due."""
    return datetime.now(UTC) + timedelta(seconds=seconds)


# Hypothesis strategies for property-based testing

# True = attempt fails, False = attempt succeeds
attempt_outcomes = st.lists(st.booleans(), min_size=1, max_size=6)
