from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path

import pytest

from relayd.checkpoints import (
    CHECKPOINT_PREFIX,
    CheckpointError,
    CheckpointManager,
    format_label,
    parse_label,
    truncate_transcript,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

SNAPSHOT_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def _git(repo: Path, *args: str) -> str:
    process = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@example.com", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return process.stdout


@pytest.fixture()
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _git(path, "init", "-q")
    (path / "app.py").write_text("print('v1')\n", encoding="utf-8")
    _git(path, "add", "-A")
    _git(path, "commit", "-q", "-m", "initial")
    return path


def _manager() -> CheckpointManager:
    return CheckpointManager(clock=lambda: SNAPSHOT_TIME)


def test_label_round_trip() -> None:
    label = format_label(SNAPSHOT_TIME)

    assert label == f"{CHECKPOINT_PREFIX} 2024-05-01T12:00:00.000+00:00"
    assert parse_label(label) == SNAPSHOT_TIME
    assert parse_label("ordinary commit") is None


def test_snapshot_outside_repository_is_noop(tmp_path: Path) -> None:
    assert asyncio.run(_manager().snapshot(tmp_path)) is None
    assert asyncio.run(_manager().list_checkpoints(tmp_path)) == []


@requires_git
def test_snapshot_clean_tree_is_noop(repo: Path) -> None:
    assert asyncio.run(_manager().snapshot(repo)) is None


@requires_git
def test_rollback_restores_snapshot_state(repo: Path) -> None:
    manager = _manager()
    (repo / "app.py").write_text("print('v2')\n", encoding="utf-8")

    checkpoint_id = asyncio.run(manager.snapshot(repo))
    assert checkpoint_id is not None
    listed = asyncio.run(manager.list_checkpoints(repo))
    assert [checkpoint.id for checkpoint in listed] == [checkpoint_id]
    assert listed[0].created_at == SNAPSHOT_TIME

    (repo / "app.py").write_text("print('broken')\n", encoding="utf-8")
    (repo / "scratch.txt").write_text("new file\n", encoding="utf-8")
    (repo / "generated").mkdir()
    (repo / "generated" / "out.bin").write_text("x", encoding="utf-8")

    result = asyncio.run(manager.rollback(repo, checkpoint_id[:10]))

    assert result.checkpoint.id == checkpoint_id
    assert (repo / "app.py").read_text(encoding="utf-8") == "print('v2')\n"
    assert not (repo / "scratch.txt").exists()
    assert not (repo / "generated").exists()
    assert _git(repo, "status", "--porcelain") == ""


@requires_git
def test_rollback_truncates_transcript(repo: Path, tmp_path: Path) -> None:
    manager = _manager()
    (repo / "app.py").write_text("print('v2')\n", encoding="utf-8")
    checkpoint_id = asyncio.run(manager.snapshot(repo))
    transcript = tmp_path / "session.jsonl"
    entries = [
        {"type": "user", "timestamp": "2024-05-01T11:59:59.000Z"},
        {"type": "custom-title", "customTitle": "kept"},
        {"type": "assistant", "timestamp": "2024-05-01T12:00:00.000Z"},
        {"type": "user", "timestamp": "2024-05-01T12:05:00.000Z"},
    ]
    transcript.write_text("".join(json.dumps(entry) + "\n" for entry in entries), encoding="utf-8")

    result = asyncio.run(manager.rollback(repo, checkpoint_id, transcript=transcript))

    assert result.transcript_truncated is True
    assert result.removed_entries == 2
    remaining = [json.loads(line) for line in transcript.read_text(encoding="utf-8").splitlines()]
    assert remaining == entries[:2]


@requires_git
def test_rollback_missing_transcript_is_not_fatal(repo: Path, tmp_path: Path) -> None:
    manager = _manager()
    (repo / "app.py").write_text("print('v2')\n", encoding="utf-8")
    checkpoint_id = asyncio.run(manager.snapshot(repo))

    result = asyncio.run(manager.rollback(repo, checkpoint_id, transcript=tmp_path / "missing.jsonl"))

    assert result.transcript_truncated is False


@requires_git
def test_rollback_rejects_non_checkpoint_commit(repo: Path) -> None:
    head = _git(repo, "rev-parse", "HEAD").strip()
    (repo / "app.py").write_text("print('dirty')\n", encoding="utf-8")

    with pytest.raises(CheckpointError):
        asyncio.run(_manager().rollback(repo, head))
    with pytest.raises(CheckpointError):
        asyncio.run(_manager().rollback(repo, "0" * 40))

    assert (repo / "app.py").read_text(encoding="utf-8") == "print('dirty')\n"


def test_truncate_transcript_without_matches_leaves_file(tmp_path: Path) -> None:
    transcript = tmp_path / "t.jsonl"
    transcript.write_text('{"timestamp": "2024-01-01T00:00:00Z"}\nnot json\n', encoding="utf-8")

    removed = truncate_transcript(transcript, SNAPSHOT_TIME)

    assert removed == 0
    assert transcript.read_text(encoding="utf-8").endswith("not json\n")
