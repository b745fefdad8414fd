"""relayd diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from datetime import date

from relayd.config import RelaydSettings
from relayd.sessions import SessionDirectory
from relayd.storage import StateStore
from relayd.tasks import ConfigLoadError, ConfigLoader


def load_store(settings: RelaydSettings) -> StateStore:
    path = settings.resolved_state_path.expanduser()
    if not path.exists():
        print(f"State file not found: {path}")
        raise SystemExit(1)
    return StateStore(path)


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = RelaydSettings()
    store = load_store(settings)
    tasks = {name: record.to_dict() for name, record in sorted(store.state.tasks.items())}
    if args.json:
        print(json.dumps(tasks, indent=2))
        return
    for name, record in tasks.items():
        reason = f" ({record['skip_reason']})" if record.get("skip_reason") else ""
        print(f"{name} [{record.get('status')}{reason}] last run {record.get('last_run')}")


def cmd_budget(args: argparse.Namespace) -> None:
    settings = RelaydSettings()
    store = load_store(settings)
    budget = store.budget
    used = budget.units_used if budget.date == date.today().isoformat() else 0
    print(json.dumps({"date": budget.date, "units_used_today": used}, indent=2))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = RelaydSettings()
    store = load_store(settings)
    payload = {
        channel: {**session, "name": store.session_name(str(session.get("session_id", "")))}
        for channel, session in sorted(store.state.sessions.items())
    }
    print(json.dumps(payload, indent=2))


def cmd_conversations(args: argparse.Namespace) -> None:
    settings = RelaydSettings()
    directory = SessionDirectory(StateStore(None), settings.transcripts_path.expanduser())
    conversations = directory.list_conversations(cwd=args.cwd, limit=args.limit)
    for info in conversations:
        print(f"{info.session_id} {info.project_path or '-'} {info.label()}")


def cmd_config(args: argparse.Namespace) -> None:
    settings = RelaydSettings()
    loader = ConfigLoader(settings.resolved_config_path.expanduser())
    try:
        config = loader.load()
    except ConfigLoadError as exc:
        print(f"Config invalid: {exc}")
        raise SystemExit(1)
    summary = {
        "path": str(loader.path),
        "tick_interval": config.tick_interval,
        "daily_limit": config.budget.daily_limit,
        "tasks": [
            {"name": task.name, "type": task.type, "interval": task.interval, "enabled": task.enabled}
            for task in config.tasks
        ],
    }
    print(json.dumps(summary, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="relayd diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="Show the last run of every task")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_budget = sub.add_parser("budget", help="Show today's cost-unit usage")
    p_budget.set_defaults(func=cmd_budget)

    p_sessions = sub.add_parser("sessions", help="Show channel to conversation bindings")
    p_sessions.set_defaults(func=cmd_sessions)

    p_conversations = sub.add_parser("conversations", help="List worker conversations on disk")
    p_conversations.add_argument("--cwd", help="Only conversations started in this directory")
    p_conversations.add_argument("--limit", type=int, default=10)
    p_conversations.set_defaults(func=cmd_conversations)

    p_config = sub.add_parser("config", help="Validate daemon.yaml and summarize it")
    p_config.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
