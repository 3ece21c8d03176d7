"""
Retry policy configuration for automation executions.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates retry behavior, so the execution manager can be
configured with a different budget or delay without changing its code.

Backoff is linear: the n-th retry waits ``base_delay_ms * n``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for execution retry behavior.

    Examples:
        # Default: 3 attempts, 1s/2s linear backoff
        policy = RetryPolicy.DEFAULT

        # Just change the budget
        policy = RetryPolicy.with_max_attempts(5)

        # Full control
        policy = RetryPolicy(max_attempts=4, base_delay_ms=250, max_delay_ms=1000)
    """

    max_attempts: int = 3
    """Maximum number of attempts (including the first try).

    Also the ceiling for ``WorkflowExecution.retry_count``.
    """

    base_delay_ms: int = 1000
    """Delay unit in milliseconds. Retry n waits base_delay_ms * n."""

    max_delay_ms: int | None = None
    """Optional cap on a single delay, None for uncapped."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        DEFAULT: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        DEFAULT = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            raise ValueError(f"max_delay_ms must be >= 0, got {self.max_delay_ms}")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """Create a policy with custom max_attempts and the default delay."""
        return cls(max_attempts=max_attempts, base_delay_ms=1000)

    def should_retry(self, retry_count: int) -> bool:
        """
        Decide whether a failure bringing the count to ``retry_count`` gets a retry.

        Args:
            retry_count: Failure count including the failure just observed

        Returns:
            True while retry_count < max_attempts
        """
        return retry_count < self.max_attempts

    def delay_for_attempt(self, retry_count: int) -> int | None:
        """
        Calculate the delay before the next retry.

        Args:
            retry_count: Failure count including the failure just observed (1-indexed)

        Returns:
            Delay in milliseconds, or None if the budget is exhausted.

        Example:
            policy = RetryPolicy.DEFAULT
            policy.delay_for_attempt(1)  # 1000
            policy.delay_for_attempt(2)  # 2000
            policy.delay_for_attempt(3)  # None
        """
        if not self.should_retry(retry_count):
            return None

        delay_ms = self.base_delay_ms * retry_count
        if self.max_delay_ms is not None:
            delay_ms = min(delay_ms, self.max_delay_ms)
        return delay_ms

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"base_delay_ms={self.base_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms})"
        )


RetryPolicy.NONE = RetryPolicy(max_attempts=1, base_delay_ms=0)

RetryPolicy.DEFAULT = RetryPolicy(max_attempts=3, base_delay_ms=1000)


class RetryableError(Exception):
    """
    Base class for errors that decide whether they should be retried.

    Any exception that does not derive from this class is treated as
    transient and consumes retry budget normally.

    Example:
        class MlsTimeout(RetryableError):
            pass  # retryable by default

        class InvalidTemplate(RetryableError):
            def is_retryable(self) -> bool:
                return False
    """

    def is_retryable(self) -> bool:
        """
        Returns True if this error is transient and the execution should retry.

        Returns:
            True if retryable, False if permanent
        """
        return True


def is_retryable(error: BaseException) -> bool:
    """Return the retry classification for any exception."""
    if isinstance(error, RetryableError):
        return error.is_retryable()
    return True
