"""
Engine configuration.

All settings have defaults matching the automation engine's standard
behavior (3 attempts, 1s linear backoff, not-found errors retried).
``EngineConfig.from_env()`` overrides them from DEALFLOW_* variables:

    DEALFLOW_LEDGER_URL              memory:// | sqlite:///path | redis://...
    DEALFLOW_MAX_RETRIES             attempts per execution (>= 1)
    DEALFLOW_RETRY_BASE_DELAY_MS     backoff unit in milliseconds (>= 0)
    DEALFLOW_FAIL_FAST_ON_NOT_FOUND  true/false
    DEALFLOW_POLL_INTERVAL           retry worker poll interval in seconds (> 0)
    DEALFLOW_WORKER_ID               retry worker identifier
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace

from dealflow.models import RetryPolicy

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


class ConfigError(Exception):
    """Configuration value is missing or malformed."""

    pass


@dataclass(frozen=True)
class EngineConfig:
    """
    Settings shared by the execution manager, retry worker, and ledger.

    Example:
        config = EngineConfig.from_env().with_worker_id("worker-2")
        ledger = await open_ledger(config.ledger_url, config.max_retries)
    """

    ledger_url: str = "sqlite:///dealflow.db"
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    fail_fast_on_not_found: bool = False
    poll_interval: float = 1.0
    worker_id: str = "retry-worker"

    def __post_init__(self) -> None:
        if not self.ledger_url:
            raise ConfigError("ledger_url must not be empty")
        if self.max_retries < 1:
            raise ConfigError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.retry_base_delay_ms < 0:
            raise ConfigError(f"retry_base_delay_ms must be >= 0, got {self.retry_base_delay_ms}")
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be > 0, got {self.poll_interval}")
        if not self.worker_id:
            raise ConfigError("worker_id must not be empty")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """
        Build a config from DEALFLOW_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ (for tests)

        Raises:
            ConfigError: If a variable is set to an invalid value
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            ledger_url=env.get("DEALFLOW_LEDGER_URL", defaults.ledger_url),
            max_retries=_int(env, "DEALFLOW_MAX_RETRIES", defaults.max_retries),
            retry_base_delay_ms=_int(
                env, "DEALFLOW_RETRY_BASE_DELAY_MS", defaults.retry_base_delay_ms
            ),
            fail_fast_on_not_found=_bool(
                env, "DEALFLOW_FAIL_FAST_ON_NOT_FOUND", defaults.fail_fast_on_not_found
            ),
            poll_interval=_float(env, "DEALFLOW_POLL_INTERVAL", defaults.poll_interval),
            worker_id=env.get("DEALFLOW_WORKER_ID", defaults.worker_id),
        )

    def with_ledger_url(self, url: str) -> EngineConfig:
        return replace(self, ledger_url=url)

    def with_max_retries(self, max_retries: int) -> EngineConfig:
        return replace(self, max_retries=max_retries)

    def with_retry_base_delay_ms(self, delay_ms: int) -> EngineConfig:
        return replace(self, retry_base_delay_ms=delay_ms)

    def with_fail_fast_on_not_found(self, enabled: bool = True) -> EngineConfig:
        return replace(self, fail_fast_on_not_found=enabled)

    def with_poll_interval(self, interval: float) -> EngineConfig:
        return replace(self, poll_interval=interval)

    def with_worker_id(self, worker_id: str) -> EngineConfig:
        return replace(self, worker_id=worker_id)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_retries, base_delay_ms=self.retry_base_delay_ms)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")
