from __future__ import annotations

import time
from enum import Enum
from typing import Callable

from clusterlab.adapters.base import CmdResult, CommandChannel
from clusterlab.core.errors import CommandFailedError, TransientCommandError
from clusterlab.core.logging import get_logger

log = get_logger(__name__)


class Mode(str, Enum):
    BEST_EFFORT = "best-effort"
    ABORT = "abort"


class NodeExecutor:
    """Runs commands on nodes in one of two failure modes.

    ABORT raises CommandFailedError on a non-zero exit; transport timeouts
    propagate as TransientCommandError. BEST_EFFORT never raises: failures are
    logged at debug level and returned to the caller.
    """

    def __init__(self, channel_for: Callable[[str], CommandChannel], default_timeout: float) -> None:
        self.channel_for = channel_for
        self.default_timeout = default_timeout

    def run(self, node: str, command: str, mode: Mode = Mode.ABORT, timeout: float | None = None) -> CmdResult:
        channel = self.channel_for(node)
        limit = timeout if timeout is not None else self.default_timeout
        try:
            result = channel.execute(command, limit)
        except TransientCommandError as exc:
            if mode == Mode.ABORT:
                raise
            log.debug("%s: best-effort `%s` did not answer: %s", node, command, exc)
            return CmdResult(124, "", str(exc))
        if result.rc != 0:
            if mode == Mode.ABORT:
                raise CommandFailedError(node, command, result.rc, result.stdout, result.stderr)
            log.debug("%s: best-effort `%s` exited %d", node, command, result.rc)
        return result

    def run_all(self, node: str, commands: list[str], mode: Mode = Mode.ABORT) -> list[CmdResult]:
        return [self.run(node, cmd, mode) for cmd in commands]


def wait_until(
    check: Callable[[], bool],
    timeout: float,
    interval: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``check`` until it returns True or ``timeout`` elapses."""
    deadline = clock() + timeout
    while True:
        if check():
            return True
        if clock() >= deadline:
            return False
        sleep(max(0.0, min(interval, deadline - clock())))
