from __future__ import annotations

import time
from typing import Callable

from .execution import Mode


class SettlingWindow:
    """Bounded period after a membership change during which verification is best-effort.

    With two voting members any disruption costs quorum, so commands issued
    while the window is open must not abort the run; once it has elapsed the
    same commands are authoritative.
    """

    def __init__(self, duration: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.duration = duration
        self.clock = clock
        self._opened_at: float | None = None

    def open(self) -> None:
        self._opened_at = self.clock()

    @property
    def opened(self) -> bool:
        return self._opened_at is not None

    @property
    def active(self) -> bool:
        return self.remaining() > 0

    def remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.duration - self.clock())

    def mode(self) -> Mode:
        return Mode.BEST_EFFORT if self.active else Mode.ABORT
