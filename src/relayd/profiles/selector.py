"""Process-wide active execution profile with automatic fallback."""

from __future__ import annotations

import logging

from ..storage import StateStore
from .loader import ProfileLoadError, ProfileLoader
from .models import DEFAULT_PROFILE_ID, ExecutionProfile, default_profile

logger = logging.getLogger(__name__)


class ProfileSelector:
    """Tracks the active profile and reverts to the default one when it keeps failing."""

    def __init__(
        self,
        loader: ProfileLoader,
        store: StateStore,
        *,
        fallback_threshold: int = 2,
    ) -> None:
        self._loader = loader
        self._store = store
        self._fallback_threshold = fallback_threshold
        self._consecutive_failures = 0

    @property
    def active_name(self) -> str:
        return self._store.active_profile or DEFAULT_PROFILE_ID

    def available(self) -> dict[str, ExecutionProfile]:
        return self._loader.load_all()

    def active(self) -> ExecutionProfile:
        name = self.active_name
        try:
            return self._loader.get(name)
        except ProfileLoadError:
            logger.warning("Active profile unavailable, using default", extra={"profile": name})
            return default_profile()

    def set_active(self, name: str) -> ExecutionProfile:
        profile = self._loader.get(name)
        self._store.set_active_profile(None if profile.is_default else profile.id)
        self._consecutive_failures = 0
        logger.info("Active profile changed", extra={"profile": profile.id})
        return profile

    def build_env(self) -> dict[str, str]:
        """Environment overrides for the active profile; empty for the default backend."""

        profile = self.active()
        if profile.is_default:
            return {}
        return dict(profile.env)

    def report_success(self) -> None:
        self._consecutive_failures = 0

    def report_failure(self) -> bool:
        """Count a worker failure; returns True when the selector fell back to the default."""

        if self.active_name == DEFAULT_PROFILE_ID:
            self._consecutive_failures = 0
            return False
        self._consecutive_failures += 1
        if self._consecutive_failures < self._fallback_threshold:
            return False
        failed = self.active_name
        self._store.set_active_profile(None)
        self._consecutive_failures = 0
        logger.warning(
            "Profile looks broken, reverted to default",
            extra={"profile": failed, "threshold": self._fallback_threshold},
        )
        return True


__all__ = ["ProfileSelector"]
