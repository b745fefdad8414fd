"""Task definitions, config loading and scheduling."""

from .loader import ConfigLoadError, ConfigLoader, ConfigWatcher
from .models import BudgetConfig, DaemonConfig, PlanStep, SessionConfig, TaskDefinition, parse_interval
from .runner import PreconditionResult, StepLog, TaskOutcome, TaskRunner, run_shell
from .scheduler import HeartbeatScheduler, SchedulerError

__all__ = [
    "BudgetConfig",
    "ConfigLoadError",
    "ConfigLoader",
    "ConfigWatcher",
    "DaemonConfig",
    "HeartbeatScheduler",
    "PlanStep",
    "PreconditionResult",
    "SchedulerError",
    "SessionConfig",
    "StepLog",
    "TaskDefinition",
    "TaskOutcome",
    "TaskRunner",
    "parse_interval",
    "run_shell",
]
