from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from clusterlab.core.config import HarnessSettings
from clusterlab.core.errors import RetryExhaustedError, TransientCommandError
from clusterlab.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Capped exponential backoff: base, 2*base, 4*base ... never above cap."""

    attempts: int = 3
    base: float = 2.0
    cap: float = 30.0

    @classmethod
    def from_settings(cls, settings: HarnessSettings) -> RetryPolicy:
        return cls(attempts=settings.retry_attempts, base=settings.backoff_base, cap=settings.backoff_cap)

    def delay(self, attempt: int) -> float:
        return min(self.cap, self.base * (2 ** (attempt - 1)))

    def call(
        self,
        operation: str,
        fn: Callable[[], T],
        retry_on: tuple[type[BaseException], ...] = (TransientCommandError,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        last: BaseException | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn()
            except retry_on as exc:
                last = exc
                if attempt == self.attempts:
                    break
                wait = self.delay(attempt)
                log.debug("%s: attempt %d/%d failed (%s), retrying in %.1fs", operation, attempt, self.attempts, exc, wait)
                sleep(wait)
        log.warning("%s: giving up after %d attempts: %s", operation, self.attempts, last)
        raise RetryExhaustedError(operation, self.attempts, last) from last
