"""Utility helpers for the worker runner."""

from __future__ import annotations

import os
import re
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
    # set when relayd itself runs inside a worker session; the child would refuse to start
    "CLAUDECODE",
}

_SESSION_MISSING = re.compile(r"no conversation found|no session|session .*not found", re.IGNORECASE)


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def reports_missing_session(stderr: str) -> bool:
    """True when the worker's error stream says the conversation handle is unknown."""

    return bool(_SESSION_MISSING.search(stderr or ""))


__all__ = ["reports_missing_session", "sanitize_environment"]
