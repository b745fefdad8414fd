from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import pytest

from relayd.budget import BudgetLedger
from relayd.profiles import ProfileLoader, ProfileSelector
from relayd.storage import StateStore
from relayd.worker import (
    ActiveRunRegistry,
    FakeWorkerRunner,
    RunError,
    WorkerBusyError,
    WorkerNotFoundError,
    WorkerResult,
    WorkerRunner,
    conversation_flags,
)
from relayd.worker.utils import reports_missing_session, sanitize_environment


def _line(payload: dict) -> str:
    return "echo '" + json.dumps(payload) + "'"


def _text(text: str) -> str:
    return _line({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


def _write_worker(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "claude"
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def test_run_collects_output_files_and_usage(tmp_path: Path) -> None:
    args_file = tmp_path / "args.txt"
    stdin_file = tmp_path / "stdin.txt"
    script = _write_worker(
        tmp_path,
        "\n".join(
            [
                f"printf '%s\\n' \"$@\" > {args_file}",
                f"cat > {stdin_file}",
                _line(
                    {
                        "type": "assistant",
                        "message": {
                            "content": [
                                {"type": "tool_use", "name": "Write", "input": {"file_path": "/repo/notes.md"}}
                            ]
                        },
                    }
                ),
                _text("thinking out loud"),
                _line(
                    {
                        "type": "result",
                        "subtype": "success",
                        "result": "final answer",
                        "session_id": "abc-123",
                        "usage": {"input_tokens": 10, "output_tokens": 5},
                    }
                ),
            ]
        ),
    )
    progress: list[str] = []
    runner = WorkerRunner(script, progress_interval=0)

    result = asyncio.run(
        runner.run(
            "summarize the repo",
            cwd=tmp_path,
            channel="chat-1",
            session_id="abc-123",
            model="haiku",
            allowed_tools=["Read", "Write"],
            on_progress=progress.append,
        )
    )

    assert result.ok
    assert result.output == "final answer"
    assert result.files == ["/repo/notes.md"]
    assert result.units == 15
    assert progress == ["Write: notes.md"]
    assert stdin_file.read_text(encoding="utf-8") == "summarize the repo"
    args = args_file.read_text(encoding="utf-8").split()
    assert args[:4] == ["-p", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--model") + 1] == "haiku"
    assert args.count("--allowedTools") == 2
    assert args[args.index("--session-id") + 1] == "abc-123"
    assert "chat-1" not in runner.registry


def test_run_without_result_uses_last_message_and_estimates_units(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\n" + _text("first") + "\n" + _text("second"))
    runner = WorkerRunner(script)

    result = asyncio.run(runner.run("abcd" * 4, cwd=tmp_path, channel="c"))

    assert result.ok
    assert result.output == "second"
    assert result.units == 6


def test_timeout_kills_worker_and_keeps_partial_output(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\n" + _text("partial work") + "\nexec sleep 30")
    runner = WorkerRunner(script)

    result = asyncio.run(runner.run("go", cwd=tmp_path, channel="slow", timeout=0.5))

    assert result.error is RunError.TIMEOUT
    assert result.output == "partial work"
    assert "slow" not in runner.registry


def test_timeout_kills_worker_children(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\n" + _text("partial work") + "\nsleep 30\n" + _text("late"))
    runner = WorkerRunner(script)

    started = time.monotonic()
    result = asyncio.run(runner.run("go", cwd=tmp_path, channel="slow", timeout=0.5))
    elapsed = time.monotonic() - started

    assert elapsed < 5
    assert result.error is RunError.TIMEOUT
    assert result.output == "partial work"
    assert "slow" not in runner.registry


def test_abort_reaches_worker_children(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\n" + _text("started") + "\nsleep 30")
    runner = WorkerRunner(script)

    async def scenario() -> WorkerResult:
        job = asyncio.create_task(runner.run("go", cwd=tmp_path, channel="chat", timeout=20))
        while "chat" not in runner.registry:
            await asyncio.sleep(0.01)
        runner.registry.abort("chat")
        return await asyncio.wait_for(job, 5)

    result = asyncio.run(scenario())

    assert result.error is RunError.STOPPED_BY_CALLER
    assert "chat" not in runner.registry


def test_non_zero_exit_is_worker_error_with_stderr(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\necho 'boom' >&2\nexit 3")
    runner = WorkerRunner(script)

    result = asyncio.run(runner.run("go", cwd=tmp_path, channel="c"))

    assert result.error is RunError.WORKER_ERROR
    assert result.detail == "boom"
    assert result.returncode == 3


def test_unknown_conversation_is_session_expired(tmp_path: Path) -> None:
    script = _write_worker(
        tmp_path, "cat > /dev/null\necho 'Error: No conversation found with session ID: x' >&2\nexit 1"
    )
    runner = WorkerRunner(script)

    result = asyncio.run(runner.run("go", cwd=tmp_path, channel="c", session_id="x", resume=True))

    assert result.error is RunError.SESSION_EXPIRED


def test_abort_interrupts_running_worker(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\n" + _text("started") + "\nexec sleep 30")
    runner = WorkerRunner(script)

    async def scenario() -> tuple[WorkerResult, bool, bool]:
        job = asyncio.create_task(runner.run("go", cwd=tmp_path, channel="chat"))
        while "chat" not in runner.registry:
            await asyncio.sleep(0.01)
        first = runner.registry.abort("chat")
        second = runner.registry.abort("chat")
        return await asyncio.wait_for(job, 10), first, second

    result, first, second = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert result.error is RunError.STOPPED_BY_CALLER
    assert "chat" not in runner.registry


def test_second_run_on_busy_channel_raises(tmp_path: Path) -> None:
    script = _write_worker(tmp_path, "cat > /dev/null\nexec sleep 30")
    runner = WorkerRunner(script)

    async def scenario() -> None:
        job = asyncio.create_task(runner.run("go", cwd=tmp_path, channel="chat", timeout=5))
        while "chat" not in runner.registry:
            await asyncio.sleep(0.01)
        try:
            with pytest.raises(WorkerBusyError):
                await runner.run("again", cwd=tmp_path, channel="chat")
        finally:
            runner.registry.abort("chat")
            await job

    asyncio.run(scenario())


def test_budget_exhausted_skips_spawn(tmp_path: Path) -> None:
    marker = tmp_path / "spawned"
    script = _write_worker(tmp_path, f"touch {marker}")
    ledger = BudgetLedger(StateStore(None), daily_limit=10)
    ledger.record(10)
    runner = WorkerRunner(script, ledger=ledger)

    result = asyncio.run(runner.run("go", cwd=tmp_path, channel="c"))

    assert result.error is RunError.BUDGET_EXCEEDED
    assert not marker.exists()


def test_completed_run_is_charged_to_ledger(tmp_path: Path) -> None:
    script = _write_worker(
        tmp_path,
        "cat > /dev/null\n" + _line({"type": "result", "result": "x", "usage": {"input_tokens": 7, "output_tokens": 3}}),
    )
    ledger = BudgetLedger(StateStore(None))
    runner = WorkerRunner(script, ledger=ledger)

    asyncio.run(runner.run("go", cwd=tmp_path, channel="c"))

    assert ledger.used == 10


def test_profile_env_is_injected_and_failures_fall_back(tmp_path: Path) -> None:
    profiles_dir = tmp_path / "profiles"
    profiles_dir.mkdir()
    (profiles_dir / "alt.yaml").write_text(
        "id: alt\nlabel: Alternate\nenv:\n  RELAYD_TEST_BACKEND: alt-backend\n", encoding="utf-8"
    )
    store = StateStore(None)
    selector = ProfileSelector(ProfileLoader([profiles_dir]), store, fallback_threshold=2)
    selector.set_active("alt")
    script = _write_worker(tmp_path, "cat > /dev/null\necho \"$RELAYD_TEST_BACKEND\" >&2\nexit 1")
    runner = WorkerRunner(script, profiles=selector)

    first = asyncio.run(runner.run("go", cwd=tmp_path, channel="c"))
    second = asyncio.run(runner.run("go", cwd=tmp_path, channel="c"))

    assert first.detail == "alt-backend"
    assert first.profile_fallback is False
    assert second.profile_fallback is True
    assert selector.active_name == "default"


def test_pending_abort_stops_run_before_spawn(tmp_path: Path) -> None:
    marker = tmp_path / "spawned"
    script = _write_worker(tmp_path, f"touch {marker}")
    registry = ActiveRunRegistry()
    runner = WorkerRunner(script, registry=registry)

    assert registry.abort("chat") is True
    result = asyncio.run(runner.run("go", cwd=tmp_path, channel="chat"))

    assert result.error is RunError.STOPPED_BY_CALLER
    assert not marker.exists()


def test_worker_not_found(tmp_path: Path) -> None:
    with pytest.raises(WorkerNotFoundError):
        WorkerRunner(tmp_path / "missing")


def test_conversation_flags() -> None:
    assert conversation_flags(None, resume=False) == []
    assert conversation_flags("abc", resume=False) == ["--session-id", "abc"]
    assert conversation_flags("abc", resume=True) == ["--resume", "abc"]
    assert conversation_flags("__continue__", resume=True) == ["--continue"]


def test_fake_worker_runner_records_invocations() -> None:
    fake = FakeWorkerRunner([WorkerResult("queued", units=3)])

    first = asyncio.run(fake.run("hello", cwd="/tmp", channel="c"))
    second = asyncio.run(fake.run("again", cwd="/tmp", channel="c"))

    assert first.output == "queued"
    assert second.output == "ok"
    assert [call["instructions"] for call in fake.invocations] == ["hello", "again"]


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("CLAUDECODE", "1")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert "CLAUDECODE" not in env
    assert env["EXTRA"] == "1"


def test_reports_missing_session() -> None:
    assert reports_missing_session("Error: No conversation found with session ID: abc")
    assert reports_missing_session("session abc not found")
    assert not reports_missing_session("permission denied")
