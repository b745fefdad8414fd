"""relayd: heartbeat scheduler and session orchestrator for a task-executing worker."""

__version__ = "0.1.0"

__all__ = ["__version__"]
