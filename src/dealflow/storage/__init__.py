"""Ledger backends for workflow execution records and retry jobs.

Provides multiple storage implementations behind a common interface:
    - ExecutionLedger: Abstract interface
    - SqliteExecutionLedger: SQLite-backed storage
    - RedisExecutionLedger: Redis-backed distributed storage
    - InMemoryExecutionLedger: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the ExecutionLedger interface.
    The engine depends on the abstraction, so backends can be swapped
    through a URL (see ``open_ledger``).
"""

from __future__ import annotations

from dealflow.storage.base import (
    ExecutionLedger,
    InvalidTransitionError,
    StorageError,
    WorkNotificationSource,
    plan_transition,
)

# Backends load lazily so aiosqlite/redis are only imported when used


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryExecutionLedger":
        from dealflow.storage.memory import InMemoryExecutionLedger

        return InMemoryExecutionLedger
    elif name == "RedisExecutionLedger":
        from dealflow.storage.redis import RedisExecutionLedger

        return RedisExecutionLedger
    elif name == "SqliteExecutionLedger":
        from dealflow.storage.sqlite import SqliteExecutionLedger

        return SqliteExecutionLedger
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


async def open_ledger(url: str, max_retry_count: int | None = None) -> ExecutionLedger:
    """
    Create and connect a ledger from a URL.

    Supported URLs:
        memory://
        sqlite:///relative/or/absolute/path.db
        sqlite://:memory:
        redis://host:port/db (also rediss://)

    Raises:
        StorageError: If the scheme is not recognised
    """
    if url.startswith("memory://"):
        from dealflow.storage.memory import InMemoryExecutionLedger

        return InMemoryExecutionLedger(max_retry_count=max_retry_count)

    if url.startswith("sqlite://"):
        from dealflow.storage.sqlite import SqliteExecutionLedger

        path = url[len("sqlite://") :]
        if path in ("", ":memory:", "/:memory:"):
            path = ":memory:"
        elif path.startswith("/"):
            path = path[1:]
        if not path:
            raise StorageError(f"SQLite URL has no database path: {url}")

        ledger = SqliteExecutionLedger(path, max_retry_count=max_retry_count)
        await ledger.connect()
        return ledger

    if url.startswith(("redis://", "rediss://")):
        from dealflow.storage.redis import RedisExecutionLedger

        ledger = RedisExecutionLedger(url, max_retry_count=max_retry_count)
        await ledger.connect()
        return ledger

    raise StorageError(f"Unsupported ledger URL: {url}")


__all__ = [
    "ExecutionLedger",
    "StorageError",
    "InvalidTransitionError",
    "WorkNotificationSource",
    "plan_transition",
    "open_ledger",
    "SqliteExecutionLedger",
    "RedisExecutionLedger",
    "InMemoryExecutionLedger",
]
