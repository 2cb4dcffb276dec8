from __future__ import annotations

import time
from typing import Callable

from clusterlab.adapters.base import CmdResult
from clusterlab.core.logging import get_logger

from .execution import Mode, NodeExecutor

log = get_logger(__name__)


def probe_answered(result: CmdResult) -> bool:
    # An unauthenticated answer still proves the path is warm.
    text = result.output
    return result.rc == 0 or "Unauthorized" in text or "BEGIN CERTIFICATE" in text


def prewarm(
    executor: NodeExecutor,
    node: str,
    probe: str,
    attempts: int,
    probe_timeout: float,
    backoff: float,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Send up to ``attempts`` throwaway probes from ``node``.

    Returns the number of probes sent. Outcomes are discarded; the caller
    always follows with its real request and normal timeout.
    """
    sent = 0
    for attempt in range(1, attempts + 1):
        sent += 1
        result = executor.run(node, probe, Mode.BEST_EFFORT, timeout=probe_timeout + 5)
        if probe_answered(result):
            log.debug("%s: pre-warm probe %d answered", node, attempt)
            break
        log.debug("%s: pre-warm probe %d/%d got rc=%d", node, attempt, attempts, result.rc)
        if attempt < attempts:
            sleep(backoff)
    return sent
