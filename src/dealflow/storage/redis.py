"""Redis-based ledger implementation.

Provides a Redis backend so engine processes on separate machines share one
ledger and one retry queue.

Data Structures:
- dealflow:exec:{id} (HASH): Execution row, metadata as JSON
- dealflow:executions (ZSET): All execution ids (score = executed_at)
- dealflow:executions:rule:{rule_id} (ZSET): Index by rule
- dealflow:executions:tx:{transaction_id} (ZSET): Index by transaction
- dealflow:retry:{job_id} (HASH): Retry job
- dealflow:retries:pending (ZSET): Pending jobs (score = run_at)
- dealflow:retries:claimed (ZSET): Claimed jobs (score = claimed_at)
- dealflow:retries:exec:{execution_id} (ZSET): Jobs per execution (score = run_at)

Key Features:
- WATCH/MULTI/EXEC compare-and-set on every status change
- Lua scripts move retry jobs between the pending and claimed sets atomically

Design: Adapter Pattern
Adapts the Redis key-value store to the ExecutionLedger interface.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError
from uuid_extensions import uuid7

from dealflow.models import (
    ExecutionNotFoundError,
    ExecutionStatus,
    RetryJobStatus,
    ScheduledRetry,
    WorkflowExecution,
)
from dealflow.storage.base import ExecutionLedger, InvalidTransitionError, StorageError

_ALL_EXECUTIONS = "dealflow:executions"
_PENDING_RETRIES = "dealflow:retries:pending"
_CLAIMED_RETRIES = "dealflow:retries:claimed"
_RETRY_PREFIX = "dealflow:retry:"

# Moves the oldest due job from the pending set to the claimed set and marks
# its hash CLAIMED, all inside one script so no crash can drop it in between.
_CLAIM_SCRIPT = """
local pending_key = KEYS[1]
local claimed_key = KEYS[2]
local now = ARGV[1]
local worker_id = ARGV[2]
local claimed_status = ARGV[3]
local prefix = ARGV[4]

local ids = redis.call('ZRANGEBYSCORE', pending_key, '-inf', now, 'LIMIT', 0, 1)
if #ids == 0 then
    return false
end

local job_id = ids[1]
redis.call('ZREM', pending_key, job_id)
redis.call('HSET', prefix .. job_id, 'status', claimed_status, 'locked_by', worker_id, 'claimed_at', now)
redis.call('ZADD', claimed_key, now, job_id)
return job_id
"""

# Returns one claimed job to the pending set at its original run_at.
_RECOVER_SCRIPT = """
local claimed_key = KEYS[1]
local pending_key = KEYS[2]
local job_key = KEYS[3]
local job_id = ARGV[1]
local claimed_status = ARGV[2]
local pending_status = ARGV[3]

if redis.call('ZREM', claimed_key, job_id) == 0 then
    return 0
end
if redis.call('HGET', job_key, 'status') ~= claimed_status then
    return 0
end

redis.call('HSET', job_key, 'status', pending_status)
redis.call('HDEL', job_key, 'locked_by', 'claimed_at')
redis.call('ZADD', pending_key, redis.call('HGET', job_key, 'run_at'), job_id)
return 1
"""


class RedisExecutionLedger(ExecutionLedger):
    """Redis ledger using a connection pool.

    Usage:
        ledger = RedisExecutionLedger("redis://localhost:6379/0")
        await ledger.connect()
        execution = await ledger.create_execution(rule_id, transaction_id)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        max_retry_count: int | None = None,
    ):
        """Initialize Redis ledger.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
            max_retry_count: Optional ceiling enforced on retry_count writes
        """
        super().__init__(max_retry_count)
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None
        self._work_notify = asyncio.Event()

    def __repr__(self) -> str:
        return f"RedisExecutionLedger({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"dealflow:exec:{execution_id}"

    @staticmethod
    def _rule_index_key(rule_id: str) -> str:
        return f"dealflow:executions:rule:{rule_id}"

    @staticmethod
    def _transaction_index_key(transaction_id: str) -> str:
        return f"dealflow:executions:tx:{transaction_id}"

    @staticmethod
    def _retry_key(job_id: str) -> str:
        return f"{_RETRY_PREFIX}{job_id}"

    @staticmethod
    def _execution_retries_key(execution_id: str) -> str:
        return f"dealflow:retries:exec:{execution_id}"

    # ========================================================================
    # Execution Operations
    # ========================================================================

    async def create_execution(
        self, rule_id: str, transaction_id: str, metadata: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        self._check_connected()

        now = datetime.now(UTC)
        execution = WorkflowExecution(
            id=str(uuid7()),
            rule_id=rule_id,
            transaction_id=transaction_id,
            status=ExecutionStatus.PENDING,
            retry_count=0,
            executed_at=now,
            metadata=json.loads(json.dumps(metadata or {}, default=str)),
            updated_at=now,
        )
        score = now.timestamp()

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._execution_key(execution.id), mapping=_execution_to_hash(execution))
                pipe.zadd(_ALL_EXECUTIONS, {execution.id: score})
                pipe.zadd(self._rule_index_key(rule_id), {execution.id: score})
                pipe.zadd(self._transaction_index_key(transaction_id), {execution.id: score})
                await pipe.execute()
        except RedisError as e:
            raise StorageError(f"Failed to create execution: {e}") from e

        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        self._check_connected()

        data = await self._redis.hgetall(self._execution_key(execution_id))
        if not data:
            return None
        return _hash_to_execution(data)

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

        if rule_id is not None:
            index = self._rule_index_key(rule_id)
        elif transaction_id is not None:
            index = self._transaction_index_key(transaction_id)
        else:
            index = _ALL_EXECUTIONS

        low = executed_after.timestamp() if executed_after is not None else "-inf"
        high = f"({executed_before.timestamp()}" if executed_before is not None else "+inf"
        ids = await self._redis.zrangebyscore(index, low, high)
        if not ids:
            return []

        async with self._redis.pipeline(transaction=False) as pipe:
            for execution_id in ids:
                pipe.hgetall(self._execution_key(execution_id))
            rows = await pipe.execute()

        results = []
        for data in rows:
            if not data:
                continue
            execution = _hash_to_execution(data)
            if transaction_id is not None and execution.transaction_id != transaction_id:
                continue
            if status is not None and execution.status != status:
                continue
            results.append(execution)

        results.sort(key=lambda e: (e.executed_at, e.id))
        return results

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

        key = self._execution_key(execution_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                data = await pipe.hgetall(key)
                if not data:
                    raise ExecutionNotFoundError(
                        f"Execution not found: execution_id={execution_id}"
                    )

                current = _hash_to_execution(data)
                updated = self._plan(
                    current,
                    to_status,
                    error_message=error_message,
                    retry_count=retry_count,
                    metadata_updates=metadata_updates,
                    manual=manual,
                )

                pipe.multi()
                pipe.delete(key)
                pipe.hset(key, mapping=_execution_to_hash(updated))
                await pipe.execute()
            except WatchError as e:
                raise InvalidTransitionError(
                    f"Execution {execution_id} changed concurrently"
                ) from e

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
        run_score = run_at.timestamp()

        key = self._execution_key(execution_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                data = await pipe.hgetall(key)
                if not data:
                    raise ExecutionNotFoundError(
                        f"Execution not found: execution_id={execution_id}"
                    )

                current = _hash_to_execution(data)
                updated = self._plan(
                    current,
                    ExecutionStatus.RETRYING,
                    error_message=error_message,
                    retry_count=retry_count,
                    now=now,
                )

                # Row update and job insert commit in one EXEC
                pipe.multi()
                pipe.delete(key)
                pipe.hset(key, mapping=_execution_to_hash(updated))
                pipe.hset(self._retry_key(job.job_id), mapping=_retry_to_hash(job))
                pipe.zadd(_PENDING_RETRIES, {job.job_id: run_score})
                pipe.zadd(self._execution_retries_key(execution_id), {job.job_id: run_score})
                await pipe.execute()
            except WatchError as e:
                raise InvalidTransitionError(
                    f"Execution {execution_id} changed concurrently"
                ) from e

        self._work_notify.set()
        return job

    async def claim_due_retry(self, worker_id: str, now: datetime | None = None) -> ScheduledRetry | None:
        """Claim the oldest due job with one Lua script (single winner, crash-safe)."""
        self._check_connected()

        now = now or datetime.now(UTC)
        job_id = await self._redis.eval(
            _CLAIM_SCRIPT,
            2,
            _PENDING_RETRIES,
            _CLAIMED_RETRIES,
            str(now.timestamp()),
            worker_id,
            RetryJobStatus.CLAIMED.value,
            _RETRY_PREFIX,
        )
        if job_id is None:
            return None

        data = await self._redis.hgetall(self._retry_key(job_id))
        return _hash_to_retry(data)

    async def complete_retry(self, job_id: str) -> None:
        self._check_connected()

        key = self._retry_key(job_id)
        if not await self._redis.exists(key):
            raise StorageError(f"Retry job not found: job_id={job_id}")

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={
                    "status": RetryJobStatus.DONE.value,
                    "completed_at": str(datetime.now(UTC).timestamp()),
                },
            )
            pipe.zrem(_CLAIMED_RETRIES, job_id)
            pipe.zrem(_PENDING_RETRIES, job_id)
            await pipe.execute()

    async def get_retry(self, job_id: str) -> ScheduledRetry | None:
        self._check_connected()

        data = await self._redis.hgetall(self._retry_key(job_id))
        return _hash_to_retry(data) if data else None

    async def list_retries(self, execution_id: str | None = None) -> list[ScheduledRetry]:
        self._check_connected()

        if execution_id is not None:
            job_ids = await self._redis.zrange(self._execution_retries_key(execution_id), 0, -1)
        else:
            job_ids = [key.rsplit(":", 1)[-1] async for key in self._redis.scan_iter("dealflow:retry:*")]

        if not job_ids:
            return []

        async with self._redis.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._retry_key(job_id))
            rows = await pipe.execute()

        jobs = [_hash_to_retry(data) for data in rows if data]
        jobs.sort(key=lambda j: (j.run_at, j.created_at))
        return jobs

    async def next_retry_time(self) -> datetime | None:
        self._check_connected()

        first = await self._redis.zrange(_PENDING_RETRIES, 0, 0, withscores=True)
        if not first:
            return None
        _, score = first[0]
        return datetime.fromtimestamp(score, UTC)

    async def recover_stale_retries(
        self, older_than: timedelta, now: datetime | None = None
    ) -> int:
        self._check_connected()

        now = now or datetime.now(UTC)
        cutoff = (now - older_than).timestamp()
        stale = await self._redis.zrangebyscore(_CLAIMED_RETRIES, "-inf", f"({cutoff}")

        count = 0
        for job_id in stale:
            count += await self._redis.eval(
                _RECOVER_SCRIPT,
                3,
                _CLAIMED_RETRIES,
                _PENDING_RETRIES,
                self._retry_key(job_id),
                job_id,
                RetryJobStatus.CLAIMED.value,
                RetryJobStatus.PENDING.value,
            )

        if count:
            self._work_notify.set()
        return count

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        """Delete every dealflow key (for testing/demos)."""
        self._check_connected()

        keys = [key async for key in self._redis.scan_iter("dealflow:*")]
        if keys:
            await self._redis.delete(*keys)

    def work_notify(self) -> asyncio.Event:
        """Local notification only; remote workers fall back to polling."""
        return self._work_notify


def _execution_to_hash(execution: WorkflowExecution) -> dict[str, str]:
    data = {
        "id": execution.id,
        "rule_id": execution.rule_id,
        "transaction_id": execution.transaction_id,
        "status": execution.status.value,
        "retry_count": str(execution.retry_count),
        "executed_at": str(execution.executed_at.timestamp()),
        "metadata": json.dumps(execution.metadata, default=str),
    }
    if execution.completed_at is not None:
        data["completed_at"] = str(execution.completed_at.timestamp())
    if execution.error_message is not None:
        data["error_message"] = execution.error_message
    if execution.updated_at is not None:
        data["updated_at"] = str(execution.updated_at.timestamp())
    return data


def _hash_to_execution(data: dict[str, str]) -> WorkflowExecution:
    return WorkflowExecution(
        id=data["id"],
        rule_id=data["rule_id"],
        transaction_id=data["transaction_id"],
        status=ExecutionStatus(data["status"]),
        retry_count=int(data.get("retry_count", 0)),
        executed_at=_parse_ts(data["executed_at"]),
        completed_at=_parse_ts(data["completed_at"]) if "completed_at" in data else None,
        error_message=data.get("error_message"),
        metadata=json.loads(data.get("metadata") or "{}"),
        updated_at=_parse_ts(data["updated_at"]) if "updated_at" in data else None,
    )


def _retry_to_hash(job: ScheduledRetry) -> dict[str, str]:
    data = {
        "job_id": job.job_id,
        "execution_id": job.execution_id,
        "attempt": str(job.attempt),
        "run_at": str(job.run_at.timestamp()),
        "status": job.status.value,
        "created_at": str(job.created_at.timestamp()),
    }
    if job.locked_by is not None:
        data["locked_by"] = job.locked_by
    if job.claimed_at is not None:
        data["claimed_at"] = str(job.claimed_at.timestamp())
    return data


def _hash_to_retry(data: dict[str, str]) -> ScheduledRetry:
    return ScheduledRetry(
        job_id=data["job_id"],
        execution_id=data["execution_id"],
        attempt=int(data["attempt"]),
        run_at=_parse_ts(data["run_at"]),
        status=RetryJobStatus(data["status"]),
        locked_by=data.get("locked_by"),
        created_at=_parse_ts(data["created_at"]),
        claimed_at=_parse_ts(data["claimed_at"]) if "claimed_at" in data else None,
        completed_at=_parse_ts(data["completed_at"]) if "completed_at" in data else None,
    )


def _parse_ts(value: str) -> datetime:
    return datetime.fromtimestamp(float(value), UTC)
