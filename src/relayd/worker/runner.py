"""Async runner for the worker CLI."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shutil
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Sequence

from ..budget import estimate_units
from .events import MessageEvent, ResultEvent, StreamDecoder, StreamEvent, ToolUseEvent, WRITE_TOOLS
from .registry import ActiveRunRegistry, WorkerBusyError
from .utils import reports_missing_session, sanitize_environment

if TYPE_CHECKING:
    from ..budget import BudgetLedger
    from ..profiles import ProfileSelector

logger = logging.getLogger(__name__)

CONTINUE_HANDLE = "__continue__"
STREAM_FLAGS = ("-p", "--output-format", "stream-json", "--verbose")
STDERR_GRACE = 2.0

ProgressCallback = Callable[[str], "Awaitable[None] | None"]


class RunError(str, Enum):
    BUDGET_EXCEEDED = "budget_exceeded"
    PRECONDITION_NOT_MET = "precondition_not_met"
    TIMEOUT = "timeout"
    WORKER_ERROR = "worker_error"
    STOPPED_BY_CALLER = "stopped_by_caller"
    SESSION_EXPIRED = "session_expired"
    PROFILE_FALLBACK = "profile_fallback"


class WorkerRunnerError(RuntimeError):
    """Base class for worker runner errors."""


class WorkerNotFoundError(WorkerRunnerError):
    """Raised when the worker executable cannot be located."""


@dataclass(slots=True)
class WorkerResult:
    """Holds the outcome of one worker invocation."""

    output: str
    error: RunError | None = None
    detail: str = ""
    files: list[str] = field(default_factory=list)
    units: int = 0
    returncode: int | None = None
    session_id: str | None = None
    profile_fallback: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": self.output,
            "error": self.error.value if self.error else None,
            "detail": self.detail,
            "files": list(self.files),
            "units": self.units,
            "returncode": self.returncode,
            "session_id": self.session_id,
            "profile_fallback": self.profile_fallback,
        }


def conversation_flags(session_id: str | None, *, resume: bool) -> list[str]:
    """Map a conversation handle to create / resume / continue flags."""

    if not session_id:
        return []
    if session_id == CONTINUE_HANDLE:
        return ["--continue"]
    if resume:
        return ["--resume", session_id]
    return ["--session-id", session_id]


class _StreamCollector:
    def __init__(
        self,
        on_progress: ProgressCallback | None,
        interval: float,
        clock: Callable[[], float],
    ) -> None:
        self._on_progress = on_progress
        self._interval = interval
        self._clock = clock
        self._last_progress: float | None = None
        self.message: str = ""
        self.result: ResultEvent | None = None
        self.files: list[str] = []

    @property
    def output(self) -> str:
        if self.result is not None and self.result.text is not None:
            return self.result.text.strip()
        return self.message.strip()

    async def apply(self, event: StreamEvent) -> None:
        if isinstance(event, MessageEvent):
            self.message = event.text
        elif isinstance(event, ResultEvent):
            self.result = event
        elif isinstance(event, ToolUseEvent):
            if event.name in WRITE_TOOLS and event.file_path and event.file_path not in self.files:
                self.files.append(event.file_path)
            await self._progress(event.describe())

    async def _progress(self, status: str) -> None:
        if self._on_progress is None:
            return
        now = self._clock()
        if self._last_progress is not None and now - self._last_progress < self._interval:
            return
        self._last_progress = now
        try:
            outcome = self._on_progress(status)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:  # pragma: no cover - best effort
            logger.debug("Progress callback failed", extra={"error": str(exc)})


class WorkerRunner:
    """Spawn the worker CLI per invocation and decode its event stream."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        registry: ActiveRunRegistry | None = None,
        ledger: "BudgetLedger | None" = None,
        profiles: "ProfileSelector | None" = None,
        progress_interval: float = 3.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self.registry = registry or ActiveRunRegistry()
        self._ledger = ledger
        self._profiles = profiles
        self._progress_interval = progress_interval
        self._clock = clock or time.monotonic

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise WorkerNotFoundError(f"Worker executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise WorkerNotFoundError("Worker CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> str:
        process = await asyncio.create_subprocess_exec(
            str(self._executable_path),
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout, _ = await process.communicate()
        return stdout.decode("utf-8", errors="replace").strip()

    def build_args(
        self,
        *,
        session_id: str | None = None,
        resume: bool = False,
        model: str | None = None,
        allowed_tools: Iterable[str] = (),
    ) -> list[str]:
        args: list[str] = [str(self._executable_path), *STREAM_FLAGS]
        if model:
            args.extend(["--model", model])
        for tool in allowed_tools:
            args.extend(["--allowedTools", tool])
        args.extend(conversation_flags(session_id, resume=resume))
        return args

    async def run(
        self,
        instructions: str,
        *,
        cwd: Path | str,
        channel: str,
        session_id: str | None = None,
        resume: bool = False,
        model: str | None = None,
        allowed_tools: Sequence[str] = (),
        timeout: float = 300.0,
        on_progress: ProgressCallback | None = None,
    ) -> WorkerResult:
        """Run one unit of work for ``channel`` and return its outcome.

        The channel holds an :class:`ActiveRun` from spawn until exit on every
        path, so a second concurrent call for the same channel raises
        :class:`WorkerBusyError`.
        """

        if self.registry.consume_pending_abort(channel):
            return WorkerResult(output="", error=RunError.STOPPED_BY_CALLER, detail="Stopped before start")
        if self._ledger is not None and not self._ledger.allows():
            return WorkerResult(output="", error=RunError.BUDGET_EXCEEDED, detail="Daily budget exhausted")
        if channel in self.registry:
            raise WorkerBusyError(f"Channel '{channel}' already has an active worker run")

        extra_env: dict[str, str] = {}
        if self._profiles is not None:
            extra_env = self._profiles.build_env()
            model = model or self._profiles.active().model

        cmd = self.build_args(session_id=session_id, resume=resume, model=model, allowed_tools=allowed_tools)
        logger.info(
            "Spawning worker",
            extra={
                "channel": channel,
                "cwd": str(cwd),
                "session_id": session_id,
                "resume": resume,
                "model": model,
            },
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=sanitize_environment(extra_env),
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Worker spawn failed", extra={"channel": channel, "error": str(exc)})
            return WorkerResult(output="", error=RunError.WORKER_ERROR, detail=str(exc))

        try:
            run = self.registry.register(channel, process, process_group=process.pid)
        except WorkerBusyError:
            self._kill_group(process)
            await process.wait()
            raise

        collector = _StreamCollector(on_progress, self._progress_interval, self._clock)
        stderr_task = asyncio.create_task(process.stderr.read())
        timed_out = False
        try:
            await asyncio.wait_for(self._pump(process, instructions, collector), timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("Worker timed out", extra={"channel": channel, "timeout": timeout})
            self._kill_group(process)
        except asyncio.CancelledError:
            self._kill_group(process)
            raise
        finally:
            try:
                await process.wait()
                stderr = await self._drain_stderr(stderr_task, channel)
            finally:
                self.registry.release(channel, run)

        result = self._classify(
            collector,
            instructions=instructions,
            stderr=stderr,
            returncode=process.returncode,
            timed_out=timed_out,
            aborted=run.aborted,
            timeout=timeout,
        )
        self._account(result)
        logger.info(
            "Worker finished",
            extra={
                "channel": channel,
                "returncode": result.returncode,
                "error": result.error.value if result.error else None,
                "units": result.units,
            },
        )
        return result

    @staticmethod
    def _kill_group(process: Any) -> None:
        """SIGKILL the worker together with every child it spawned."""

        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                process.kill()
            except ProcessLookupError:
                pass

    @staticmethod
    async def _drain_stderr(stderr_task: asyncio.Task, channel: str) -> str:
        done, _ = await asyncio.wait([stderr_task], timeout=STDERR_GRACE)
        if not done:
            # a detached grandchild still holds the pipe
            stderr_task.cancel()
            logger.warning("Worker stderr left open after exit", extra={"channel": channel})
            return ""
        return stderr_task.result().decode("utf-8", errors="replace")

    async def _pump(self, process: Any, instructions: str, collector: _StreamCollector) -> None:
        try:
            process.stdin.write(instructions.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            process.stdin.close()

        decoder = StreamDecoder()
        while True:
            chunk = await process.stdout.read(65536)
            if not chunk:
                break
            for event in decoder.feed(chunk):
                await collector.apply(event)
        for event in decoder.flush():
            await collector.apply(event)
        await process.wait()

    @staticmethod
    def _classify(
        collector: _StreamCollector,
        *,
        instructions: str,
        stderr: str,
        returncode: int | None,
        timed_out: bool,
        aborted: bool,
        timeout: float,
    ) -> WorkerResult:
        output = collector.output
        result_event = collector.result
        units = (result_event.units if result_event is not None else None) or estimate_units(instructions, output)
        result = WorkerResult(
            output=output,
            files=list(collector.files),
            units=units,
            returncode=returncode,
            session_id=result_event.session_id if result_event is not None else None,
        )
        if timed_out:
            result.error = RunError.TIMEOUT
            result.detail = f"Worker exceeded {timeout:g}s"
        elif aborted:
            result.error = RunError.STOPPED_BY_CALLER
            result.detail = "Stopped by caller"
        elif returncode != 0:
            result.detail = stderr.strip() or f"Exit code {returncode}"
            result.error = RunError.SESSION_EXPIRED if reports_missing_session(stderr) else RunError.WORKER_ERROR
        elif result_event is not None and result_event.is_error:
            result.detail = output or "Worker reported an error"
            result.error = (
                RunError.SESSION_EXPIRED if reports_missing_session(output) else RunError.WORKER_ERROR
            )
        return result

    def _account(self, result: WorkerResult) -> None:
        if self._ledger is not None and result.error is not RunError.STOPPED_BY_CALLER:
            self._ledger.record(result.units)
        if self._profiles is None:
            return
        if result.ok:
            self._profiles.report_success()
        elif result.error is RunError.WORKER_ERROR:
            result.profile_fallback = self._profiles.report_failure()


class FakeWorkerRunner(WorkerRunner):
    """Test double that returns queued results without spawning anything."""

    def __init__(self, responses: Iterable[WorkerResult] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[dict[str, Any]] = []
        self._executable_path = Path("/tmp/fake-worker")
        self.registry = ActiveRunRegistry()
        self._ledger = None
        self._profiles = None

    async def run(self, instructions: str, **kwargs: Any) -> WorkerResult:  # type: ignore[override]
        if self.registry.consume_pending_abort(kwargs.get("channel", "")):
            return WorkerResult(output="", error=RunError.STOPPED_BY_CALLER, detail="Stopped before start")
        self._invocations.append({"instructions": instructions, **kwargs})
        if self._responses:
            return self._responses.pop(0)
        return WorkerResult(output="ok", units=estimate_units(instructions, "ok"))

    @property
    def invocations(self) -> list[dict[str, Any]]:
        return self._invocations


__all__ = [
    "CONTINUE_HANDLE",
    "FakeWorkerRunner",
    "RunError",
    "WorkerNotFoundError",
    "WorkerResult",
    "WorkerRunner",
    "WorkerRunnerError",
    "conversation_flags",
]
