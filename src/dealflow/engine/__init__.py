"""Automation engine: trigger evaluation, dispatch, execution, and retries.

Layered leaves-first:
    - TriggerEvaluator / RuleMatcher: which rules fire
    - ExecutionManager: runs one rule, owns retry accounting
    - Dispatcher: fans an event out to matching rules
    - RetryWorker: runs durable retry jobs
    - DateTriggerScheduler: fires date/time-based rules periodically
"""

from dealflow.engine.dispatcher import DispatchResult, Dispatcher
from dealflow.engine.manager import ExecutionError, ExecutionManager
from dealflow.engine.matcher import RuleMatcher
from dealflow.engine.notifier import Notifier
from dealflow.engine.scheduler import DateTriggerScheduler, SchedulerError
from dealflow.engine.trigger import TriggerEvaluator
from dealflow.engine.worker import RetryWorker, RetryWorkerHandle, WorkerError

__all__ = [
    "TriggerEvaluator",
    "RuleMatcher",
    "Notifier",
    "ExecutionManager",
    "ExecutionError",
    "Dispatcher",
    "DispatchResult",
    "RetryWorker",
    "RetryWorkerHandle",
    "WorkerError",
    "DateTriggerScheduler",
    "SchedulerError",
]
