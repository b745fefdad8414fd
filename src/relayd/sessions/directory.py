"""Channel-to-conversation bindings and transcript discovery."""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from ..storage import StateStore
from ..worker import CONTINUE_HANDLE
from .models import ConversationInfo, Session

logger = logging.getLogger(__name__)

INDEX_FILENAME = "sessions-index.json"
_HEAD_LINES = 20


def _same_dir(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return os.path.normpath(os.path.expanduser(left)) == os.path.normpath(os.path.expanduser(right))


def _index_mtime(entry: dict[str, Any]) -> float:
    file_mtime = entry.get("fileMtime")
    if isinstance(file_mtime, (int, float)):
        return float(file_mtime) / 1000.0
    modified = entry.get("modified")
    if isinstance(modified, str):
        try:
            return datetime.fromisoformat(modified.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0
    return 0.0


class SessionDirectory:
    """Maps channel identities to worker conversations.

    Conversations are discovered from two sources in the worker's transcript
    store: the per-project ``sessions-index.json`` files and a direct mtime
    scan of ``*.jsonl`` logs. The index can lag behind actual writes, so both
    are merged by conversation id keeping the freshest mtime.
    """

    def __init__(
        self,
        store: StateStore,
        transcripts_root: Path,
        *,
        default_cwd: Path | None = None,
        cache_ttl: float = 5.0,
        clock: Callable[[], float] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._root = Path(transcripts_root)
        self._default_cwd = str(default_cwd or Path.home())
        self._cache_ttl = cache_ttl
        self._clock = clock or time.monotonic
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._cache: list[ConversationInfo] | None = None
        self._cache_at = 0.0

    @property
    def default_cwd(self) -> str:
        return self._default_cwd

    # bindings ----------------------------------------------------------

    def get(self, channel: str) -> Session | None:
        payload = self._store.session_payload(channel)
        if not payload:
            return None
        return Session.from_dict(channel, payload)

    def _bind(self, session: Session) -> Session:
        self._store.put_session(session.channel, session.to_dict())
        return session

    def create(self, channel: str, cwd: str | Path | None = None, name: str | None = None) -> Session:
        """Bind ``channel`` to a brand-new conversation handle, replacing any previous binding."""

        session = Session(
            channel=channel,
            session_id=self._id_factory(),
            cwd=str(cwd or self._default_cwd),
            started=False,
            name=name or None,
        )
        if name:
            self._store.set_session_name(session.session_id, name)
        self.invalidate()
        logger.info(
            "New session",
            extra={"channel": channel, "session_id": session.session_id, "cwd": session.cwd, "name": name},
        )
        return self._bind(session)

    def continue_latest(self, channel: str, cwd: str | Path | None = None) -> Session:
        """Bind to whatever conversation the worker itself considers latest in ``cwd``."""

        current = self.get(channel)
        target = str(cwd or (current.cwd if current else self._default_cwd))
        return self._bind(Session(channel=channel, session_id=CONTINUE_HANDLE, cwd=target, started=True))

    def attach_most_recent(self, channel: str, cwd: str | Path | None = None) -> Session:
        """Bind to the most recently modified conversation, optionally within ``cwd``.

        Falls back to the continue-latest handle when nothing can be discovered.
        """

        found = self.list_conversations(cwd=str(cwd) if cwd else None, limit=1)
        if not found:
            return self.continue_latest(channel, cwd)
        return self._attach_conversation(channel, found[0], fallback_cwd=str(cwd) if cwd else None)

    def attach(self, channel: str, query: str) -> Session:
        """Bind to a conversation matched by name, then by id prefix."""

        needle = query.strip()
        lowered = needle.lower()
        everything = self.list_conversations(limit=None)
        match = next(
            (info for info in everything if self._store.session_name(info.session_id).lower() == lowered),
            None,
        )
        if match is None:
            match = next(
                (
                    info
                    for info in everything
                    if lowered and lowered in self._store.session_name(info.session_id).lower()
                ),
                None,
            )
        if match is None:
            match = next((info for info in everything if info.session_id.startswith(needle)), None)
        if match is None:
            current = self.get(channel)
            cwd = current.cwd if current else self._default_cwd
            return self._bind(Session(channel=channel, session_id=needle, cwd=cwd, started=True))
        return self._attach_conversation(channel, match)

    def _attach_conversation(
        self,
        channel: str,
        info: ConversationInfo,
        *,
        fallback_cwd: str | None = None,
    ) -> Session:
        current = self.get(channel)
        cwd = info.project_path or fallback_cwd or (current.cwd if current else self._default_cwd)
        name = self._store.session_name(info.session_id) or info.custom_title or None
        logger.info("Attached session", extra={"channel": channel, "session_id": info.session_id})
        return self._bind(Session(channel=channel, session_id=info.session_id, cwd=cwd, started=True, name=name))

    def switch_directory(self, channel: str, cwd: str | Path) -> Session:
        current = self.get(channel)
        if current is None:
            return self.create(channel, cwd)
        current.cwd = str(cwd)
        return self._bind(current)

    def mark_started(self, channel: str) -> Session | None:
        session = self.get(channel)
        if session is None or session.started:
            return session
        session.started = True
        return self._bind(session)

    # naming ------------------------------------------------------------

    def session_name(self, session_id: str) -> str:
        return self._store.session_name(session_id)

    def name_conversation(self, session_id: str, name: str) -> None:
        """Record a display name and append a rename record to the worker transcript."""

        self._store.set_session_name(session_id, name)
        transcript = self.find_transcript(session_id)
        if transcript is None:
            return
        record = {"type": "custom-title", "customTitle": name, "sessionId": session_id}
        try:
            with transcript.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not append rename record", extra={"session_id": session_id, "error": str(exc)})
        self.invalidate()

    # discovery ---------------------------------------------------------

    def invalidate(self) -> None:
        self._cache = None

    def find_transcript(self, session_id: str) -> Path | None:
        if not session_id or session_id == CONTINUE_HANDLE or not self._root.is_dir():
            return None
        for project_dir in sorted(self._root.iterdir()):
            candidate = project_dir / f"{session_id}.jsonl"
            if candidate.is_file():
                return candidate
        return None

    def list_conversations(self, *, cwd: str | None = None, limit: int | None = 10) -> list[ConversationInfo]:
        """Most recently modified conversations first; equal mtimes order by id."""

        conversations = self._scan()
        if cwd:
            conversations = [info for info in conversations if _same_dir(info.project_path, cwd)]
        return conversations[:limit] if limit else list(conversations)

    def _scan(self) -> list[ConversationInfo]:
        now = self._clock()
        if self._cache is not None and now - self._cache_at < self._cache_ttl:
            return self._cache

        merged: dict[str, ConversationInfo] = {}
        if self._root.is_dir():
            for project_dir in sorted(path for path in self._root.iterdir() if path.is_dir()):
                for info in self._read_index(project_dir):
                    self._merge(merged, info)
                for transcript in project_dir.glob("*.jsonl"):
                    try:
                        stat = transcript.stat()
                    except OSError:
                        continue
                    if stat.st_size == 0:
                        continue
                    self._merge(
                        merged,
                        ConversationInfo(session_id=transcript.stem, mtime=stat.st_mtime, transcript=transcript),
                    )

        conversations: list[ConversationInfo] = []
        for info in merged.values():
            if info.message_count is not None and info.message_count < 1:
                continue
            if info.project_path is None and info.transcript is not None:
                info.project_path = self._read_cwd(info.transcript)
            conversations.append(info)
        conversations.sort(key=lambda info: (-info.mtime, info.session_id))

        self._cache = conversations
        self._cache_at = now
        return conversations

    @staticmethod
    def _merge(merged: dict[str, ConversationInfo], info: ConversationInfo) -> None:
        existing = merged.get(info.session_id)
        if existing is None:
            merged[info.session_id] = info
            return
        if info.mtime > existing.mtime:
            # a transcript written after the index entry outdates its counters
            existing.message_count = info.message_count
        elif existing.message_count is None:
            existing.message_count = info.message_count
        existing.mtime = max(existing.mtime, info.mtime)
        existing.project_path = existing.project_path or info.project_path
        existing.custom_title = existing.custom_title or info.custom_title
        existing.summary = existing.summary or info.summary
        existing.first_prompt = existing.first_prompt or info.first_prompt
        existing.transcript = existing.transcript or info.transcript

    @staticmethod
    def _read_index(project_dir: Path) -> list[ConversationInfo]:
        index_file = project_dir / INDEX_FILENAME
        if not index_file.is_file():
            return []
        try:
            document = json.loads(index_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.debug("Skipping unreadable index", extra={"path": str(index_file), "error": str(exc)})
            return []
        entries = document.get("entries") if isinstance(document, dict) else None
        infos: list[ConversationInfo] = []
        for entry in entries or []:
            if not isinstance(entry, dict) or not entry.get("sessionId"):
                continue
            count = entry.get("messageCount")
            infos.append(
                ConversationInfo(
                    session_id=str(entry["sessionId"]),
                    mtime=_index_mtime(entry),
                    project_path=entry.get("projectPath"),
                    message_count=int(count) if isinstance(count, (int, float)) else None,
                    custom_title=entry.get("customTitle"),
                    summary=entry.get("summary"),
                    first_prompt=entry.get("firstPrompt"),
                )
            )
        return infos

    @staticmethod
    def _read_cwd(transcript: Path) -> str | None:
        try:
            with transcript.open("r", encoding="utf-8", errors="replace") as handle:
                for _, line in zip(range(_HEAD_LINES), handle):
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(record, dict) and record.get("cwd"):
                        return str(record["cwd"])
        except OSError:
            return None
        return None


__all__ = ["INDEX_FILENAME", "SessionDirectory"]
