from __future__ import annotations

import time
from typing import Any, Callable

from clusterlab.core.model import FatalError, PhaseResult, PhaseStatus
from clusterlab.utils.time import utc_now_iso


class PhaseTimer:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.started_at = utc_now_iso()
        self._t0 = clock()

    def elapsed(self) -> float:
        return max(0.0, self.clock() - self._t0)


def make_result(
    phase: str,
    node: str,
    ok: bool,
    message: str,
    timer: PhaseTimer | None = None,
    command: str | None = None,
    evidence: dict[str, Any] | None = None,
) -> PhaseResult:
    return PhaseResult(
        phase=phase,
        node=node,
        status=PhaseStatus.PASS if ok else PhaseStatus.FAIL,
        message=message,
        started_at=timer.started_at if timer else utc_now_iso(),
        duration_s=timer.elapsed() if timer else 0.0,
        command=command,
        evidence=evidence or {},
    )


def skipped(phase: str, node: str, message: str) -> PhaseResult:
    return PhaseResult(phase, node, PhaseStatus.SKIPPED, message, utc_now_iso())


def command_of(exc: BaseException) -> str | None:
    """Innermost command attached to an error chain."""
    seen = exc
    while seen is not None:
        command = getattr(seen, "command", None)
        if command:
            return command
        seen = getattr(seen, "last_error", None) or seen.__cause__
    return None


def fatal_from(phase: str, node: str, exc: BaseException) -> FatalError:
    return FatalError(
        phase=phase,
        node=getattr(exc, "node", None) or node,
        command=command_of(exc),
        kind=type(exc).__name__,
        message=str(exc),
    )
