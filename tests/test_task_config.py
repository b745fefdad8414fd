from __future__ import annotations

import asyncio
import os
import textwrap
from pathlib import Path

import pytest
from pydantic import ValidationError

from relayd.tasks import (
    ConfigLoadError,
    ConfigLoader,
    ConfigWatcher,
    DaemonConfig,
    TaskDefinition,
    parse_interval,
)


SAMPLE = textwrap.dedent(
    """
    heartbeat_check_interval: 30s
    budget:
      daily_limit: 1000
      warning_threshold: 0.5
    tasks:
      - name: inbox-digest
        interval: 15m
        prompt: Summarize new mail
        precondition: ls ~/mail/new
        allowedTools: [Read, Grep]
        notify: true
      - name: disk-check
        type: script
        interval: 1h
        command: df -h
      - name: weekly-review
        type: workflow
        interval: 7d
        steps:
          - skill: review
          - prompt: Write the summary
            optional: true
            timeout: 60
    """
)


@pytest.mark.parametrize(
    ("value", "seconds"),
    [("30s", 30), ("5m", 300), ("2h", 7200), ("1d", 86400), (90, 90), ("45", 45)],
)
def test_parse_interval(value, seconds: int) -> None:
    assert parse_interval(value) == seconds


@pytest.mark.parametrize("value", ["", "5 minutes", "1w", "0s", -5, True])
def test_parse_interval_rejects_garbage(value) -> None:
    with pytest.raises(ValueError):
        parse_interval(value)


def test_loader_parses_sample(tmp_path: Path) -> None:
    path = tmp_path / "daemon.yaml"
    path.write_text(SAMPLE, encoding="utf-8")

    config = ConfigLoader(path).load()

    assert config.tick_interval == 30
    assert config.budget.daily_limit == 1000
    digest = config.task("inbox-digest")
    assert digest is not None
    assert digest.interval == 900
    assert digest.allowed_tools == ["Read", "Grep"]
    assert digest.effective_model == "haiku"
    review = config.task("weekly-review")
    assert review.type == "plan"
    assert review.effective_model == "sonnet"
    assert review.steps[0].instructions() == "/review"
    assert review.steps[1].optional is True
    assert config.task("missing") is None


def test_missing_or_empty_file_means_no_tasks(tmp_path: Path) -> None:
    assert ConfigLoader(tmp_path / "absent.yaml").load().tasks == []
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert ConfigLoader(empty).load() == DaemonConfig()


@pytest.mark.parametrize(
    "document",
    [
        "tasks: [{name: a, interval: soon, prompt: x}]",
        "tasks: [{name: a, prompt: x}, {name: a, prompt: y}]",
        "tasks: [{name: a, type: script}]",
        "- just\n- a list\n",
        "tasks: [unclosed",
    ],
)
def test_invalid_documents_raise(tmp_path: Path, document: str) -> None:
    path = tmp_path / "daemon.yaml"
    path.write_text(document, encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        ConfigLoader(path).load()


def test_plan_requires_steps() -> None:
    with pytest.raises(ValidationError):
        TaskDefinition(name="p", type="plan")


def test_watcher_applies_valid_changes_and_keeps_old_on_error(tmp_path: Path) -> None:
    path = tmp_path / "daemon.yaml"
    path.write_text("tasks: []\n", encoding="utf-8")
    os.utime(path, (1000, 1000))
    seen: list[DaemonConfig] = []
    watcher = ConfigWatcher(ConfigLoader(path), seen.append, settle=0)

    assert asyncio.run(watcher.check()) is False

    path.write_text("tasks: [{name: a, prompt: hi}]\n", encoding="utf-8")
    os.utime(path, (2000, 2000))
    assert asyncio.run(watcher.check()) is True
    assert [task.name for task in seen[-1].tasks] == ["a"]

    path.write_text("tasks: [{name: a, interval: soon, prompt: hi}]\n", encoding="utf-8")
    os.utime(path, (3000, 3000))
    assert asyncio.run(watcher.check()) is False
    assert len(seen) == 1
    assert asyncio.run(watcher.check()) is False


def test_watcher_awaits_async_callbacks(tmp_path: Path) -> None:
    path = tmp_path / "daemon.yaml"
    watcher_calls: list[int] = []

    async def on_change(config: DaemonConfig) -> None:
        watcher_calls.append(len(config.tasks))

    watcher = ConfigWatcher(ConfigLoader(path), on_change, settle=0)
    path.write_text("tasks: [{name: a, prompt: hi}, {name: b, prompt: yo}]\n", encoding="utf-8")

    assert asyncio.run(watcher.check()) is True
    assert watcher_calls == [2]
