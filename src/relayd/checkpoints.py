"""Git-backed checkpoints of a worker's working directory."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "[relayd-checkpoint]"
_GIT_IDENTITY = ("-c", "user.name=relayd", "-c", "user.email=relayd@localhost")


class CheckpointError(RuntimeError):
    """Raised when a rollback cannot be performed."""


@dataclass(frozen=True, slots=True)
class Checkpoint:
    id: str
    label: str

    @property
    def created_at(self) -> datetime | None:
        return parse_label(self.label)


@dataclass(slots=True)
class RollbackResult:
    checkpoint: Checkpoint
    transcript_truncated: bool
    removed_entries: int = 0


def format_label(moment: datetime) -> str:
    return f"{CHECKPOINT_PREFIX} {moment.astimezone(timezone.utc).isoformat(timespec='milliseconds')}"


def parse_label(label: str) -> datetime | None:
    if not label.startswith(CHECKPOINT_PREFIX):
        return None
    stamp = label[len(CHECKPOINT_PREFIX):].strip()
    try:
        return _parse_timestamp(stamp)
    except ValueError:
        return None


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CheckpointManager:
    """Snapshot a working tree before mutating runs and roll it back on request."""

    def __init__(self, *, git: str = "git", clock: Callable[[], datetime] | None = None) -> None:
        self._git = git
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _run_git(self, cwd: Path | str, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self._git,
            *_GIT_IDENTITY,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def is_repository(self, cwd: Path | str) -> bool:
        if not Path(cwd).is_dir():
            return False
        try:
            code, stdout, _ = await self._run_git(cwd, "rev-parse", "--is-inside-work-tree")
        except OSError:
            return False
        return code == 0 and stdout.strip() == "true"

    async def snapshot(self, cwd: Path | str) -> str | None:
        """Commit pending changes under a checkpoint label; ``None`` when there is nothing to save."""

        try:
            if not await self.is_repository(cwd):
                return None
            code, status, _ = await self._run_git(cwd, "status", "--porcelain")
            if code != 0 or not status.strip():
                return None
            code, _, stderr = await self._run_git(cwd, "add", "-A")
            if code != 0:
                logger.warning("Checkpoint staging failed", extra={"cwd": str(cwd), "error": stderr.strip()})
                return None
            label = format_label(self._clock())
            code, _, stderr = await self._run_git(cwd, "commit", "--no-verify", "-q", "-m", label)
            if code != 0:
                logger.warning("Checkpoint commit failed", extra={"cwd": str(cwd), "error": stderr.strip()})
                return None
            code, head, _ = await self._run_git(cwd, "rev-parse", "HEAD")
        except OSError as exc:
            logger.warning("Checkpoint skipped", extra={"cwd": str(cwd), "error": str(exc)})
            return None
        checkpoint_id = head.strip() if code == 0 else None
        logger.info("Checkpoint created", extra={"cwd": str(cwd), "checkpoint": checkpoint_id, "label": label})
        return checkpoint_id

    async def list_checkpoints(self, cwd: Path | str, *, limit: int = 20) -> list[Checkpoint]:
        """Checkpoint commits reachable from HEAD, newest first."""

        if not await self.is_repository(cwd):
            return []
        code, stdout, _ = await self._run_git(
            cwd,
            "log",
            f"-n{limit}",
            "--fixed-strings",
            f"--grep={CHECKPOINT_PREFIX}",
            "--format=%H%x09%s",
        )
        if code != 0:
            return []
        checkpoints: list[Checkpoint] = []
        for line in stdout.splitlines():
            commit, _, subject = line.partition("\t")
            if commit and subject.startswith(CHECKPOINT_PREFIX):
                checkpoints.append(Checkpoint(id=commit, label=subject))
        return checkpoints

    async def rollback(
        self,
        cwd: Path | str,
        checkpoint_id: str,
        *,
        transcript: Path | None = None,
    ) -> RollbackResult:
        """Reset the tree to ``checkpoint_id`` and drop transcript entries recorded since.

        A failed reset raises :class:`CheckpointError` and leaves the tree as it
        was. Transcript truncation failures are logged and reported in the result.
        """

        checkpoint = await self._resolve(cwd, checkpoint_id)
        code, _, stderr = await self._run_git(cwd, "reset", "--hard", "-q", checkpoint.id)
        if code != 0:
            raise CheckpointError(f"Reset to {checkpoint.id[:8]} failed: {stderr.strip()}")
        code, _, stderr = await self._run_git(cwd, "clean", "-fdq")
        if code != 0:
            logger.warning("Removing untracked files failed", extra={"cwd": str(cwd), "error": stderr.strip()})
        logger.info("Rolled back working tree", extra={"cwd": str(cwd), "checkpoint": checkpoint.id})

        result = RollbackResult(checkpoint=checkpoint, transcript_truncated=False)
        cutoff = checkpoint.created_at
        if transcript is None or cutoff is None:
            return result
        try:
            result.removed_entries = truncate_transcript(transcript, cutoff)
            result.transcript_truncated = True
        except OSError as exc:
            logger.warning(
                "Transcript truncation failed",
                extra={"transcript": str(transcript), "checkpoint": checkpoint.id, "error": str(exc)},
            )
        return result

    async def _resolve(self, cwd: Path | str, checkpoint_id: str) -> Checkpoint:
        if not await self.is_repository(cwd):
            raise CheckpointError(f"{cwd} is not a git work tree")
        code, stdout, stderr = await self._run_git(
            cwd, "log", "-n1", "--format=%H%x09%s", f"{checkpoint_id}^{{commit}}", "--"
        )
        if code != 0 or not stdout.strip():
            raise CheckpointError(f"Unknown checkpoint '{checkpoint_id}': {stderr.strip()}")
        commit, _, subject = stdout.strip().partition("\t")
        if not subject.startswith(CHECKPOINT_PREFIX):
            raise CheckpointError(f"Commit {commit[:8]} is not a checkpoint")
        return Checkpoint(id=commit, label=subject)


def truncate_transcript(transcript: Path, cutoff: datetime) -> int:
    """Remove entries timestamped at or after ``cutoff``; returns the number removed."""

    kept: list[str] = []
    removed = 0
    with transcript.open("r", encoding="utf-8") as handle:
        for line in handle:
            stamp = _entry_time(line)
            if stamp is not None and stamp >= cutoff:
                removed += 1
                continue
            kept.append(line)
    if not removed:
        return 0
    tmp_path = transcript.with_name(transcript.name + ".tmp")
    tmp_path.write_text("".join(kept), encoding="utf-8")
    os.replace(tmp_path, transcript)
    return removed


def _entry_time(line: str) -> datetime | None:
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict) or not isinstance(record.get("timestamp"), str):
        return None
    try:
        return _parse_timestamp(record["timestamp"])
    except ValueError:
        return None


__all__ = [
    "CHECKPOINT_PREFIX",
    "Checkpoint",
    "CheckpointError",
    "CheckpointManager",
    "RollbackResult",
    "format_label",
    "parse_label",
    "truncate_transcript",
]
