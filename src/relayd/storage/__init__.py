"""Storage abstractions for relayd."""

from .models import BudgetState, DaemonState, TaskRunRecord
from .state import StateStore, StateStoreError

__all__ = [
    "BudgetState",
    "DaemonState",
    "StateStore",
    "StateStoreError",
    "TaskRunRecord",
]
