from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


def format_eta(seconds: float) -> str:
    seconds = max(0, int(round(seconds)))
    if seconds < 60:
        return f"~{seconds}s remaining"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"~{minutes}m {secs}s remaining"
    hours, minutes = divmod(minutes, 60)
    return f"~{hours}h {minutes}m remaining"


class ProgressReporter:
    """Forwards progress and status to optional callbacks; progress never goes backwards."""

    def __init__(
        self,
        total: int,
        on_progress: Callable[[int], None] | None = None,
        on_status: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.total = max(0, int(total))
        self.on_progress = on_progress
        self.on_status = on_status
        self._clock = clock
        self._started = clock()
        self._last_pct = -1
        self.completed = 0

    @property
    def elapsed_sec(self) -> float:
        return self._clock() - self._started

    def eta_sec(self) -> float | None:
        if self.completed <= 0 or self.total <= 0:
            return None
        return (self.total - self.completed) * (self.elapsed_sec / self.completed)

    def status(self, phase: str) -> None:
        eta = self.eta_sec()
        message = f"{phase} ({format_eta(eta)})" if eta is not None and self.completed < self.total else phase
        logger.debug("status: %s", message)
        if self.on_status is not None:
            self.on_status(message)

    def advance(self, completed: int) -> int:
        self.completed = max(self.completed, min(self.total, int(completed)))
        pct = 100 if self.total == 0 else round(100 * self.completed / self.total)
        return self._emit(pct)

    def finish(self) -> None:
        self._emit(100)

    def _emit(self, pct: int) -> int:
        pct = int(max(0, min(100, pct)))
        if pct < self._last_pct:
            pct = self._last_pct
        if pct != self._last_pct and self.on_progress is not None:
            self.on_progress(pct)
        self._last_pct = pct
        return pct
