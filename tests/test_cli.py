from __future__ import annotations

import argparse
import importlib.util
import json
from pathlib import Path

import pytest

from relayd.storage import StateStore, TaskRunRecord


def _load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "relayd_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "relayd"
    home.mkdir()
    monkeypatch.setenv("RELAYD_HOME", str(home))
    monkeypatch.delenv("RELAYD_STATE_PATH", raising=False)
    monkeypatch.delenv("RELAYD_CONFIG_PATH", raising=False)
    monkeypatch.setenv("WORKER_TRANSCRIPTS_PATH", str(tmp_path / "projects"))
    return home


def test_missing_state_file_exits(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    diag = _load_diag("relayd_diag_missing")

    with pytest.raises(SystemExit) as excinfo:
        diag.cmd_tasks(argparse.Namespace(json=False))

    assert excinfo.value.code == 1
    assert "State file not found" in capsys.readouterr().out


def test_tasks_lists_last_runs(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = StateStore(home / "state.json")
    store.record_task("digest", TaskRunRecord(last_run="2024-05-01T08:00:00+00:00", status="success"))
    store.record_task(
        "mail", TaskRunRecord(last_run="2024-05-01T09:00:00+00:00", status="skipped", skip_reason="no-activity")
    )
    diag = _load_diag("relayd_diag_tasks")

    diag.cmd_tasks(argparse.Namespace(json=False))
    lines = capsys.readouterr().out.splitlines()

    assert lines == [
        "digest [success] last run 2024-05-01T08:00:00+00:00",
        "mail [skipped (no-activity)] last run 2024-05-01T09:00:00+00:00",
    ]

    diag.cmd_tasks(argparse.Namespace(json=True))
    payload = json.loads(capsys.readouterr().out)
    assert payload["mail"]["skip_reason"] == "no-activity"


def test_sessions_include_names(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = StateStore(home / "state.json")
    store.put_session("chat", {"session_id": "abc", "cwd": "/work", "started": True})
    store.set_session_name("abc", "parser")
    diag = _load_diag("relayd_diag_sessions")

    diag.cmd_sessions(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["chat"]["name"] == "parser"
    assert payload["chat"]["cwd"] == "/work"


def test_config_summary_and_invalid_config(home: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = home / "daemon.yaml"
    config.write_text("tasks:\n  - name: digest\n    prompt: hi\n    interval: 5m\n", encoding="utf-8")
    diag = _load_diag("relayd_diag_config")

    diag.cmd_config(argparse.Namespace())
    summary = json.loads(capsys.readouterr().out)
    assert summary["tasks"] == [{"name": "digest", "type": "agent", "interval": 300, "enabled": True}]

    config.write_text("tasks:\n  - name: digest\n    prompt: hi\n    interval: often\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        diag.cmd_config(argparse.Namespace())
    assert "Config invalid" in capsys.readouterr().out


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    diag = _load_diag("relayd_diag_help")

    diag.main([])

    assert "relayd diagnostics" in capsys.readouterr().out
