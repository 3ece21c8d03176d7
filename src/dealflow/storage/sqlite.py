"""SQLite-backed ledger implementation for dealflow.

Design Pattern: Adapter Pattern
SqliteExecutionLedger adapts a SQLite database to the ExecutionLedger
interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- IMMEDIATE transactions where two writes must land together
- Conditional UPDATE (compare-and-set on status and retry_count) for every
  status change
- INTEGER millisecond timestamps, UTC
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
from uuid_extensions import uuid7

from dealflow.models import (
    ExecutionNotFoundError,
    ExecutionStatus,
    RetryJobStatus,
    ScheduledRetry,
    WorkflowExecution,
)
from dealflow.storage.base import ExecutionLedger, InvalidTransitionError, StorageError

_EXECUTION_COLUMNS = """
    id, rule_id, transaction_id, status, retry_count, executed_at,
    completed_at, error_message, metadata, updated_at
"""

_RETRY_COLUMNS = """
    job_id, execution_id, attempt, run_at, status, locked_by,
    created_at, claimed_at, completed_at
"""


class SqliteExecutionLedger(ExecutionLedger):
    """SQLite-backed durable ledger.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        ledger = SqliteExecutionLedger("automation.db")
        await ledger.connect()
        try:
            execution = await ledger.create_execution(rule_id, transaction_id)
        finally:
            await ledger.close()
    """

    def __init__(self, db_path: str, max_retry_count: int | None = None):
        """Initialize ledger (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            max_retry_count: Optional ceiling enforced on retry_count writes
        """
        super().__init__(max_retry_count)
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection
        self._work_notify = asyncio.Event()

    @classmethod
    async def in_memory(cls, max_retry_count: int | None = None) -> SqliteExecutionLedger:
        """
        Create a connected in-memory SQLite ledger for testing.

        Example:
            ledger = await SqliteExecutionLedger.in_memory()
        """
        instance = cls(":memory:", max_retry_count=max_retry_count)
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteExecutionLedger(in-memory)"
        return f"SqliteExecutionLedger({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._connection = await aiosqlite.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,  # Autocommit; explicit BEGIN where needed
            )
        except Exception as e:
            raise StorageError(f"Failed to open {self.db_path}: {e}") from e

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()

        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - workflow_executions is the audit trail, rows are never deleted
        - retry_jobs is the durable retry queue
        - lowercase execution statuses, UPPERCASE job statuses
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                rule_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'pending','running','completed','failed','retrying'
                ) ) NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                executed_at INTEGER NOT NULL,
                completed_at INTEGER,
                error_message TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_rule
            ON workflow_executions(rule_id, executed_at)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_transaction
            ON workflow_executions(transaction_id, executed_at)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_status
            ON workflow_executions(status)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS retry_jobs (
                job_id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                attempt INTEGER NOT NULL,
                run_at INTEGER NOT NULL,
                status TEXT CHECK( status IN ('PENDING','CLAIMED','DONE') ) NOT NULL,
                locked_by TEXT,
                created_at INTEGER NOT NULL,
                claimed_at INTEGER,
                completed_at INTEGER
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_retry_jobs_due
            ON retry_jobs(status, run_at)
        """)

    # ========================================================================
    # Execution Operations
    # ========================================================================

    async def create_execution(
        self, rule_id: str, transaction_id: str, metadata: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        self._check_connected()

        now_millis = _to_millis(datetime.now(UTC))
        execution_id = str(uuid7())

        async with self._lock:
            try:
                await self._connection.execute(
                    f"""
                    INSERT INTO workflow_executions ({_EXECUTION_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        execution_id,
                        rule_id,
                        transaction_id,
                        ExecutionStatus.PENDING.value,
                        0,
                        now_millis,
                        None,
                        None,
                        json.dumps(metadata or {}, default=str),
                        now_millis,
                    ),
                )
            except Exception as e:
                raise StorageError(f"Failed to create execution: {e}") from e

            execution = await self._fetch_execution(execution_id)

        if execution is None:
            raise StorageError(f"Failed to read back execution {execution_id}")
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        self._check_connected()

        async with self._lock:
            return await self._fetch_execution(execution_id)

    async def list_executions(
        self,
        *,
        rule_id: str | None = None,
        transaction_id: str | None = None,
        status: ExecutionStatus | None = None,
        executed_after: datetime | None = None,
        executed_before: datetime | None = None,
    ) -> list[WorkflowExecution]:
        self._check_connected()

        clauses = []
        params: list[Any] = []
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if transaction_id is not None:
            clauses.append("transaction_id = ?")
            params.append(transaction_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if executed_after is not None:
            clauses.append("executed_at >= ?")
            params.append(_to_millis(executed_after))
        if executed_before is not None:
            clauses.append("executed_at < ?")
            params.append(_to_millis(executed_before))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._lock:
            cursor = await self._connection.execute(
                f"""
                SELECT {_EXECUTION_COLUMNS}
                FROM workflow_executions
                {where}
                ORDER BY executed_at ASC, id ASC
                """,
                params,
            )
            rows = await cursor.fetchall()

        return [self._row_to_execution(row) for row in rows]

    async def transition(
        self,
        execution_id: str,
        to_status: ExecutionStatus,
        *,
        error_message: str | None = None,
        retry_count: int | None = None,
        metadata_updates: dict[str, Any] | None = None,
        manual: bool = False,
    ) -> WorkflowExecution:
        self._check_connected()

        async with self._lock:
            current = await self._fetch_execution(execution_id)
            if current is None:
                raise ExecutionNotFoundError(f"Execution not found: execution_id={execution_id}")

            updated = self._plan(
                current,
                to_status,
                error_message=error_message,
                retry_count=retry_count,
                metadata_updates=metadata_updates,
                manual=manual,
            )
            await self._write_transition(current, updated)

        return updated

    # ========================================================================
    # Retry Queue Operations
    # ========================================================================

    async def schedule_retry(
        self,
        execution_id: str,
        retry_count: int,
        error_message: str,
        run_at: datetime,
    ) -> ScheduledRetry:
        self._check_connected()

        now = datetime.now(UTC)
        job = ScheduledRetry(
            job_id=str(uuid7()),
            execution_id=execution_id,
            attempt=retry_count,
            run_at=run_at,
            status=RetryJobStatus.PENDING,
            created_at=now,
        )

        async with self._lock:
            current = await self._fetch_execution(execution_id)
            if current is None:
                raise ExecutionNotFoundError(f"Execution not found: execution_id={execution_id}")

            updated = self._plan(
                current,
                ExecutionStatus.RETRYING,
                error_message=error_message,
                retry_count=retry_count,
                now=now,
            )

            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                await self._write_transition(current, updated)
                await self._connection.execute(
                    f"""
                    INSERT INTO retry_jobs ({_RETRY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.job_id,
                        job.execution_id,
                        job.attempt,
                        _to_millis(job.run_at),
                        job.status.value,
                        None,
                        _to_millis(job.created_at),
                        None,
                        None,
                    ),
                )
            except Exception:
                await self._connection.execute("ROLLBACK")
                raise
            await self._connection.execute("COMMIT")

        self._work_notify.set()
        return job

    async def claim_due_retry(self, worker_id: str, now: datetime | None = None) -> ScheduledRetry | None:
        self._check_connected()

        now = now or datetime.now(UTC)
        now_millis = _to_millis(now)

        async with self._lock:
            try:
                cursor = await self._connection.execute(
                    f"""
                    UPDATE retry_jobs
                    SET status = 'CLAIMED',
                        locked_by = ?,
                        claimed_at = ?
                    WHERE job_id = (
                        SELECT job_id
                        FROM retry_jobs
                        WHERE status = 'PENDING'
                          AND run_at <= ?
                        ORDER BY run_at ASC, created_at ASC
                        LIMIT 1
                    )
                    AND status = 'PENDING'
                    RETURNING {_RETRY_COLUMNS}
                    """,
                    (worker_id, now_millis, now_millis),
                )
                row = await cursor.fetchone()
                await cursor.close()
            except Exception as e:
                raise StorageError(f"Failed to claim retry job: {e}") from e

        if row is None:
            return None
        return self._row_to_retry(row)

    async def complete_retry(self, job_id: str) -> None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE retry_jobs
                SET status = 'DONE',
                    completed_at = ?
                WHERE job_id = ?
                """,
                (_to_millis(datetime.now(UTC)), job_id),
            )

        if cursor.rowcount == 0:
            raise StorageError(f"Retry job not found: job_id={job_id}")

    async def get_retry(self, job_id: str) -> ScheduledRetry | None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                f"SELECT {_RETRY_COLUMNS} FROM retry_jobs WHERE job_id = ?",
                (job_id,),
            )
            row = await cursor.fetchone()

        return self._row_to_retry(row) if row is not None else None

    async def list_retries(self, execution_id: str | None = None) -> list[ScheduledRetry]:
        self._check_connected()

        async with self._lock:
            if execution_id is None:
                cursor = await self._connection.execute(
                    f"SELECT {_RETRY_COLUMNS} FROM retry_jobs ORDER BY run_at, created_at"
                )
            else:
                cursor = await self._connection.execute(
                    f"""
                    SELECT {_RETRY_COLUMNS} FROM retry_jobs
                    WHERE execution_id = ?
                    ORDER BY run_at, created_at
                    """,
                    (execution_id,),
                )
            rows = await cursor.fetchall()

        return [self._row_to_retry(row) for row in rows]

    async def next_retry_time(self) -> datetime | None:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT MIN(run_at) FROM retry_jobs WHERE status = 'PENDING'"
            )
            row = await cursor.fetchone()

        if row is None or row[0] is None:
            return None
        return _from_millis(row[0])

    async def recover_stale_retries(
        self, older_than: timedelta, now: datetime | None = None
    ) -> int:
        self._check_connected()

        now = now or datetime.now(UTC)
        cutoff_millis = _to_millis(now - older_than)

        async with self._lock:
            cursor = await self._connection.execute(
                """
                UPDATE retry_jobs
                SET status = 'PENDING',
                    locked_by = NULL,
                    claimed_at = NULL
                WHERE status = 'CLAIMED'
                  AND claimed_at < ?
                """,
                (cutoff_millis,),
            )

        count = cursor.rowcount
        if count > 0:
            self._work_notify.set()
        return count

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        self._check_connected()

        async with self._lock:
            await self._connection.execute("DELETE FROM retry_jobs")
            await self._connection.execute("DELETE FROM workflow_executions")

    async def close(self) -> None:
        """Close the connection explicitly, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def work_notify(self) -> asyncio.Event:
        """Return event set when retry jobs are scheduled (WorkNotificationSource)."""
        return self._work_notify

    # ========================================================================
    # Helpers
    # ========================================================================

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def _fetch_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Read one execution row (lock must be held)."""
        cursor = await self._connection.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE id = ?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return self._row_to_execution(row) if row is not None else None

    async def _write_transition(self, current: WorkflowExecution, updated: WorkflowExecution) -> None:
        """Compare-and-set write of a planned transition (lock must be held).

        The WHERE clause pins the status and retry_count that were read, so a
        concurrent writer from another process makes this update match zero rows.
        """
        cursor = await self._connection.execute(
            """
            UPDATE workflow_executions
            SET status = ?,
                retry_count = ?,
                completed_at = ?,
                error_message = ?,
                metadata = ?,
                updated_at = ?
            WHERE id = ? AND status = ? AND retry_count = ?
            """,
            (
                updated.status.value,
                updated.retry_count,
                _to_millis(updated.completed_at) if updated.completed_at else None,
                updated.error_message,
                json.dumps(updated.metadata, default=str),
                _to_millis(updated.updated_at or datetime.now(UTC)),
                current.id,
                current.status.value,
                current.retry_count,
            ),
        )

        if cursor.rowcount == 0:
            raise InvalidTransitionError(
                f"Execution {current.id} changed concurrently "
                f"(expected status={current.status}, retry_count={current.retry_count})"
            )

    def _row_to_execution(self, row: tuple) -> WorkflowExecution:
        """Convert database row to WorkflowExecution.

        Row format (matches _EXECUTION_COLUMNS):
        0:id, 1:rule_id, 2:transaction_id, 3:status, 4:retry_count,
        5:executed_at, 6:completed_at, 7:error_message, 8:metadata, 9:updated_at
        """
        metadata: dict[str, Any] = {}
        if row[8]:
            try:
                metadata = json.loads(row[8])
            except (json.JSONDecodeError, TypeError) as e:
                raise StorageError(f"Corrupt metadata for execution {row[0]}: {e}") from e

        return WorkflowExecution(
            id=row[0],
            rule_id=row[1],
            transaction_id=row[2],
            status=ExecutionStatus(row[3]),
            retry_count=row[4],
            executed_at=_from_millis(row[5]),
            completed_at=_from_millis(row[6]) if row[6] is not None else None,
            error_message=row[7],
            metadata=metadata,
            updated_at=_from_millis(row[9]) if row[9] is not None else None,
        )

    def _row_to_retry(self, row: tuple) -> ScheduledRetry:
        """Convert database row to ScheduledRetry (matches _RETRY_COLUMNS)."""
        return ScheduledRetry(
            job_id=row[0],
            execution_id=row[1],
            attempt=row[2],
            run_at=_from_millis(row[3]),
            status=RetryJobStatus(row[4]),
            locked_by=row[5],
            created_at=_from_millis(row[6]),
            claimed_at=_from_millis(row[7]) if row[7] is not None else None,
            completed_at=_from_millis(row[8]) if row[8] is not None else None,
        )


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, UTC)
