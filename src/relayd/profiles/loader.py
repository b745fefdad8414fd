"""Execution profile discovery."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import ValidationError

from .models import DEFAULT_PROFILE_ID, ExecutionProfile, default_profile

PROFILE_SUFFIXES = ("*.yml", "*.yaml")


class ProfileLoadError(RuntimeError):
    """Raised when a profile document is unreadable, invalid or missing."""


class ProfileLoader:
    """Reads one execution profile per YAML document from a list of directories.

    A document without an ``id`` takes its file name. Values under ``env`` may
    reference the daemon's own environment as ``$VAR`` or ``${VAR}`` so that
    credentials stay out of the files.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _documents(self) -> Iterable[Path]:
        for base in self._search_paths:
            for pattern in PROFILE_SUFFIXES:
                yield from sorted(base.glob(pattern))

    @staticmethod
    def _parse(path: Path) -> ExecutionProfile | None:
        try:
            document: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ProfileLoadError(f"Failed to read profile {path}: {exc}") from exc
        if document is None:
            return None
        if not isinstance(document, dict):
            raise ProfileLoadError(f"Profile {path} must be a mapping")
        if "id" not in document:
            document["id"] = path.stem
        env = document.get("env")
        if isinstance(env, dict):
            document["env"] = {
                key: os.path.expandvars(value) if isinstance(value, str) else value for key, value in env.items()
            }
        try:
            return ExecutionProfile.model_validate(document)
        except ValidationError as exc:
            raise ProfileLoadError(f"Profile validation error in {path}: {exc}") from exc

    def load_all(self) -> dict[str, ExecutionProfile]:
        """Return every profile keyed by id, the built-in default first.

        A file may relabel the default profile but never remove it. Later
        directories win when ids collide. All broken files are reported together.
        """

        profiles: dict[str, ExecutionProfile] = {DEFAULT_PROFILE_ID: default_profile()}
        errors: list[str] = []
        for path in self._documents():
            try:
                profile = self._parse(path)
            except ProfileLoadError as exc:
                errors.append(str(exc))
                continue
            if profile is not None:
                profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))
        return profiles

    def get(self, profile_id: str) -> ExecutionProfile:
        profiles = self.load_all()
        if profile_id not in profiles:
            raise ProfileLoadError(
                f"Profile '{profile_id}' not found. Available: {', '.join(sorted(profiles))}"
            )
        return profiles[profile_id]


__all__ = ["ExecutionProfile", "ProfileLoadError", "ProfileLoader"]
