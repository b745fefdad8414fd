"""Execution of a single scheduled task."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable
from uuid import uuid4

from ..budget import BudgetLedger
from ..storage import StateStore, TaskRunRecord
from ..worker import RunError, WorkerResult, WorkerRunner
from ..worker.utils import sanitize_environment
from .models import TaskDefinition

if TYPE_CHECKING:
    from ..channels import Notifier
    from ..checkpoints import CheckpointManager

logger = logging.getLogger(__name__)

PRECONDITION_TIMEOUT = 15.0
PRECONDITION_MAX_BYTES = 64 * 1024
SCRIPT_TIMEOUT = 120.0
PREVIEW_CHARS = 200


@dataclass(slots=True)
class PreconditionResult:
    passed: bool
    context: str = ""


@dataclass(slots=True)
class StepLog:
    number: int
    label: str
    ok: bool
    output: str = ""
    error: str | None = None


@dataclass(slots=True)
class TaskOutcome:
    """Outcome handed back to the scheduler and the notifier."""

    name: str
    success: bool
    output: str = ""
    error: str | None = None
    skipped: bool = False
    units: int = 0
    record: TaskRunRecord = field(default_factory=TaskRunRecord)
    warnings: list[str] = field(default_factory=list)

    def message(self) -> str:
        if self.success:
            return f"{self.name} completed\n\n{self.output}".strip()
        return f"{self.name} failed: {self.error}"


async def run_shell(command: str, *, timeout: float, cwd: str | None = None) -> tuple[int, str, str]:
    """Run ``command`` through the shell, killing it when ``timeout`` elapses."""

    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=sanitize_environment(),
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise
    return (
        process.returncode,
        stdout[:PRECONDITION_MAX_BYTES].decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class TaskRunner:
    """Budget gate, precondition, dispatch and bookkeeping for one task run."""

    def __init__(
        self,
        worker: WorkerRunner,
        ledger: BudgetLedger,
        store: StateStore,
        *,
        checkpoints: "CheckpointManager | None" = None,
        notifier: "Notifier | None" = None,
        default_cwd: str | None = None,
        precondition_timeout: float = PRECONDITION_TIMEOUT,
        script_timeout: float = SCRIPT_TIMEOUT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._worker = worker
        self._ledger = ledger
        self._store = store
        self._checkpoints = checkpoints
        self.notifier = notifier
        self._default_cwd = default_cwd or str(Path.home())
        self._precondition_timeout = precondition_timeout
        self._script_timeout = script_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> str:
        return self._clock().isoformat()

    def _cwd(self, task: TaskDefinition) -> str:
        return str(Path(task.cwd).expanduser()) if task.cwd else self._default_cwd

    async def execute(self, task: TaskDefinition) -> TaskOutcome:
        """Run ``task`` once. Failures are recorded on the task, never raised."""

        try:
            outcome = await self._execute(task)
        except Exception as exc:
            logger.exception("Task crashed", extra={"task": task.name})
            record = self._record(task.name, status="error", error=str(exc)[:PREVIEW_CHARS])
            outcome = TaskOutcome(name=task.name, success=False, error=str(exc), record=record)
        await self._notify(task, outcome)
        return outcome

    async def _execute(self, task: TaskDefinition) -> TaskOutcome:
        if not self._ledger.allows():
            logger.warning("Budget exceeded, skipping task", extra={"task": task.name})
            record = self._record(
                task.name,
                status="skipped",
                skip_reason="budget",
                output_preview="Daily budget exhausted",
            )
            return TaskOutcome(
                name=task.name, success=False, error=RunError.BUDGET_EXCEEDED.value, record=record
            )

        precheck = await self.check_precondition(task)
        if not precheck.passed:
            record = self._record(
                task.name,
                status="skipped",
                skip_reason="no-activity",
                output_preview="Precondition not met, no activity",
            )
            return TaskOutcome(
                name=task.name,
                success=True,
                output="(skipped, no activity)",
                error=RunError.PRECONDITION_NOT_MET.value,
                skipped=True,
                record=record,
            )

        if task.type == "script":
            return await self._run_script(task)

        if task.checkpoint and self._checkpoints is not None:
            await self._checkpoints.snapshot(self._cwd(task))

        if task.type == "plan":
            return await self._run_plan(task, precheck.context)
        return await self._run_agent(task, precheck.context)

    async def check_precondition(self, task: TaskDefinition) -> PreconditionResult:
        if not task.precondition:
            return PreconditionResult(passed=True)
        try:
            code, stdout, stderr = await run_shell(
                task.precondition, timeout=self._precondition_timeout, cwd=self._cwd(task)
            )
        except asyncio.TimeoutError:
            logger.info("Precondition timed out", extra={"task": task.name})
            return PreconditionResult(passed=False)
        except OSError as exc:
            logger.info("Precondition could not run", extra={"task": task.name, "error": str(exc)})
            return PreconditionResult(passed=False)
        output = stdout.strip()
        if code != 0:
            logger.info(
                "Precondition failed", extra={"task": task.name, "returncode": code, "stderr": stderr[:100]}
            )
            return PreconditionResult(passed=False)
        if not output:
            logger.info("Precondition empty, skipping", extra={"task": task.name})
            return PreconditionResult(passed=False)
        logger.info("Precondition passed", extra={"task": task.name, "lines": len(output.splitlines())})
        return PreconditionResult(passed=True, context=output)

    async def _run_script(self, task: TaskDefinition) -> TaskOutcome:
        logger.info("Executing script task", extra={"task": task.name, "command": task.command})
        try:
            code, stdout, stderr = await run_shell(
                task.command or "", timeout=self._script_timeout, cwd=self._cwd(task)
            )
        except asyncio.TimeoutError:
            error = f"Script exceeded {self._script_timeout:g}s"
            record = self._record(task.name, status="error", error=error)
            return TaskOutcome(name=task.name, success=False, error=RunError.TIMEOUT.value, record=record)
        output = stdout.strip()
        if code != 0:
            error = (stderr.strip() or f"Exit code {code}")[:PREVIEW_CHARS]
            logger.error("Script task failed", extra={"task": task.name, "error": error})
            record = self._record(task.name, status="error", error=error)
            return TaskOutcome(name=task.name, success=False, error=error, record=record)
        record = self._record(task.name, status="success", output_preview=output[:PREVIEW_CHARS])
        return TaskOutcome(name=task.name, success=True, output=output, record=record)

    @staticmethod
    def _with_context(prompt: str, context: str) -> str:
        if not context:
            return prompt
        return f"{prompt}\n\nRelevant data:\n```\n{context}\n```"

    def _conversation(self, task: TaskDefinition, *, fresh: bool) -> tuple[str | None, bool]:
        """Return ``(handle, resume)`` for the next run of ``task``."""

        if task.persistent_session:
            previous = self._store.task_record(task.name)
            if previous is not None and previous.session_id:
                return previous.session_id, True
            return str(uuid4()), False
        if fresh:
            return str(uuid4()), False
        return None, False

    def _fallback_warning(self, task: TaskDefinition, result: WorkerResult, outcome: TaskOutcome) -> None:
        if result.profile_fallback:
            warning = f"{RunError.PROFILE_FALLBACK.value}: reverted to the default profile after repeated failures"
            outcome.warnings.append(warning)
            logger.warning("Profile fallback during task", extra={"task": task.name})

    async def _run_agent(self, task: TaskDefinition, context: str) -> TaskOutcome:
        session_id, resume = self._conversation(task, fresh=False)
        logger.info("Executing task", extra={"task": task.name, "model": task.effective_model})
        result = await self._worker.run(
            self._with_context(task.prompt, context),
            cwd=self._cwd(task),
            channel=f"task:{task.name}",
            session_id=session_id,
            resume=resume,
            model=task.effective_model,
            allowed_tools=task.allowed_tools,
            timeout=task.timeout,
        )
        if result.ok:
            record = self._record(
                task.name,
                status="success",
                output_preview=result.output[:PREVIEW_CHARS],
                session_id=session_id if task.persistent_session else None,
            )
            outcome = TaskOutcome(
                name=task.name, success=True, output=result.output, units=result.units, record=record
            )
        elif result.error is RunError.SESSION_EXPIRED and task.persistent_session:
            logger.warning("Persistent session gone, resetting", extra={"task": task.name, "session_id": session_id})
            record = self._record(task.name, status="session_reset", error=result.detail[:PREVIEW_CHARS])
            outcome = TaskOutcome(
                name=task.name, success=False, error=RunError.SESSION_EXPIRED.value, units=result.units, record=record
            )
        else:
            error = result.detail or (result.error.value if result.error else "unknown error")
            logger.error("Task failed", extra={"task": task.name, "error": error[:300]})
            record = self._record(
                task.name,
                status="error",
                error=error[:PREVIEW_CHARS],
                output_preview=result.output[:PREVIEW_CHARS],
                session_id=session_id if task.persistent_session and resume else None,
            )
            outcome = TaskOutcome(
                name=task.name,
                success=False,
                output=result.output,
                error=result.error.value if result.error else error,
                units=result.units,
                record=record,
            )
        self._fallback_warning(task, result, outcome)
        return outcome

    async def _run_plan(self, task: TaskDefinition, context: str) -> TaskOutcome:
        session_id, started = self._conversation(task, fresh=True)
        logs: list[StepLog] = []
        units = 0
        failure: str | None = None
        session_reset = False
        fallback = False
        logger.info(
            "Plan starting", extra={"task": task.name, "steps": len(task.steps), "session_id": session_id}
        )

        for number, step in enumerate(task.steps, start=1):
            instructions = step.instructions()
            if number == 1:
                instructions = self._with_context(instructions, context)
            label = step.skill or "prompt"
            result = await self._worker.run(
                instructions,
                cwd=self._cwd(task),
                channel=f"task:{task.name}",
                session_id=session_id,
                resume=started,
                model=task.effective_model,
                allowed_tools=task.allowed_tools,
                timeout=step.timeout,
            )
            units += result.units
            fallback = fallback or result.profile_fallback
            if result.ok:
                started = True
                logs.append(StepLog(number, label, ok=True, output=result.output[:500]))
                logger.info("Plan step done", extra={"task": task.name, "step": number, "units": result.units})
                if not self._ledger.allows():
                    logger.warning("Budget exceeded mid-plan", extra={"task": task.name, "step": number})
                    break
                continue

            error = result.detail or (result.error.value if result.error else "failed")
            logs.append(StepLog(number, label, ok=False, error=error[:PREVIEW_CHARS]))
            logger.error("Plan step failed", extra={"task": task.name, "step": number, "error": error[:200]})
            if result.error is RunError.SESSION_EXPIRED and task.persistent_session:
                session_reset = True
                failure = f"Step {number} failed"
                break
            if not step.optional:
                failure = f"Step {number} failed"
                break

        completed = [log for log in logs if log.ok]
        ledger = "\n".join(f"Step {log.number} ({log.label}): {'OK' if log.ok else 'FAILED'}" for log in logs)
        last_output = completed[-1].output if completed else ""
        output = f"{ledger}\n\n{last_output}".strip()
        keep_session = task.persistent_session and started and not session_reset

        produced = any(log.output.strip() for log in completed)
        if not produced:
            failure = failure or "No step produced output"
        if session_reset:
            status = "session_reset"
        elif produced:
            status = "success"
        else:
            status = "error"
        record = self._record(
            task.name,
            status=status,
            output_preview=f"{ledger}\n\n{last_output[:PREVIEW_CHARS]}".strip(),
            error=failure,
            session_id=session_id if keep_session else None,
            steps_completed=len(completed),
            steps_total=len(task.steps),
        )
        logger.info(
            "Plan finished",
            extra={"task": task.name, "completed": len(completed), "total": len(task.steps), "units": units},
        )
        outcome = TaskOutcome(
            name=task.name,
            success=produced and not session_reset,
            output=output,
            error=None if produced and not session_reset else failure,
            units=units,
            record=record,
        )
        if fallback:
            outcome.warnings.append(
                f"{RunError.PROFILE_FALLBACK.value}: reverted to the default profile after repeated failures"
            )
        return outcome

    def _record(self, name: str, **fields_: object) -> TaskRunRecord:
        record = TaskRunRecord(last_run=self._now(), **fields_)  # type: ignore[arg-type]
        return self._store.record_task(name, record)

    async def _notify(self, task: TaskDefinition, outcome: TaskOutcome) -> None:
        if self.notifier is None:
            return
        messages: list[str] = list(outcome.warnings)
        if task.notify and not outcome.skipped:
            messages.append(outcome.message())
        for text in messages:
            try:
                await self.notifier.notify(text, {"task": task.name})
            except Exception as exc:  # pragma: no cover - notifier is external
                logger.error("Notify failed", extra={"task": task.name, "error": str(exc)})


__all__ = ["PreconditionResult", "StepLog", "TaskOutcome", "TaskRunner", "run_shell"]
