"""Daily cost-unit ledger."""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Callable

from .storage import BudgetState, StateStore

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 50_000
DEFAULT_WARNING_THRESHOLD = 0.8


def estimate_units(*texts: str | None) -> int:
    """Rough cost estimate, about four characters per unit."""

    return math.ceil(sum(len(text or "") for text in texts) / 4)


class BudgetLedger:
    """Gate runs on today's consumption and charge completed runs."""

    def __init__(
        self,
        store: StateStore,
        *,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._store = store
        self.daily_limit = daily_limit
        self.warning_threshold = warning_threshold
        self._today = today or date.today

    def configure(self, *, daily_limit: int, warning_threshold: float) -> None:
        self.daily_limit = daily_limit
        self.warning_threshold = warning_threshold

    def _current(self) -> BudgetState:
        state = self._store.budget
        today = self._today().isoformat()
        if state.date != today:
            state.date = today
            state.units_used = 0
            self._store.save()
            logger.info("Budget ledger reset for new day", extra={"date": today})
        return state

    @property
    def used(self) -> int:
        return self._current().units_used

    def allows(self) -> bool:
        return self._current().units_used < self.daily_limit

    def record(self, units: int) -> int:
        state = self._current()
        state.units_used += max(0, int(units))
        self._store.save()
        return state.units_used

    def level(self) -> str:
        """Return ``ok``, ``warning`` or ``exceeded`` for today's consumption."""

        ratio = self._current().units_used / self.daily_limit if self.daily_limit else 1.0
        if ratio >= 1:
            return "exceeded"
        if ratio >= self.warning_threshold:
            return "warning"
        return "ok"

    def summary(self) -> dict[str, object]:
        state = self._current()
        return {
            "date": state.date,
            "used": state.units_used,
            "limit": self.daily_limit,
            "level": self.level(),
        }


__all__ = ["BudgetLedger", "estimate_units", "DEFAULT_DAILY_LIMIT", "DEFAULT_WARNING_THRESHOLD"]
