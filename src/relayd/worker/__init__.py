"""Worker CLI orchestration utilities."""

from .events import MessageEvent, NoopEvent, ResultEvent, StreamDecoder, ToolUseEvent, decode_line
from .registry import ActiveRun, ActiveRunRegistry, WorkerBusyError
from .runner import (
    CONTINUE_HANDLE,
    FakeWorkerRunner,
    RunError,
    WorkerNotFoundError,
    WorkerResult,
    WorkerRunner,
    WorkerRunnerError,
    conversation_flags,
)

__all__ = [
    "ActiveRun",
    "ActiveRunRegistry",
    "CONTINUE_HANDLE",
    "FakeWorkerRunner",
    "MessageEvent",
    "NoopEvent",
    "ResultEvent",
    "RunError",
    "StreamDecoder",
    "ToolUseEvent",
    "WorkerBusyError",
    "WorkerNotFoundError",
    "WorkerResult",
    "WorkerRunner",
    "WorkerRunnerError",
    "conversation_flags",
    "decode_line",
]
