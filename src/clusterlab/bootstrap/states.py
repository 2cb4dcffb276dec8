from __future__ import annotations

import threading

from clusterlab.core.errors import InvalidTransitionError
from clusterlab.core.logging import get_logger
from clusterlab.core.model import ClusterState
from clusterlab.utils.time import utc_now_iso

log = get_logger(__name__)

# Forward edges only; FAILED is reachable from every non-terminal state.
TRANSITIONS: dict[ClusterState, ClusterState] = {
    ClusterState.UNINITIALIZED: ClusterState.PRIMARY_INIT,
    ClusterState.PRIMARY_INIT: ClusterState.PRIMARY_READY,
    ClusterState.PRIMARY_READY: ClusterState.SECONDARY_JOINING,
    ClusterState.SECONDARY_JOINING: ClusterState.SECONDARY_READY,
    ClusterState.SECONDARY_READY: ClusterState.AGENTS_JOINING,
    ClusterState.AGENTS_JOINING: ClusterState.CLUSTER_READY,
}


class BootstrapStateMachine:
    def __init__(self) -> None:
        self.state = ClusterState.UNINITIALIZED
        self.history: list[tuple[str, str]] = [(self.state.value, utc_now_iso())]
        self.reason: str | None = None
        self._lock = threading.Lock()

    def advance(self, target: ClusterState) -> None:
        with self._lock:
            if target == ClusterState.FAILED:
                self._fail("failed")
                return
            expected = TRANSITIONS.get(self.state)
            if expected != target:
                raise InvalidTransitionError(f"cannot move from {self.state.value} to {target.value}")
            self._enter(target)

    def fail(self, reason: str) -> None:
        with self._lock:
            self._fail(reason)

    def _fail(self, reason: str) -> None:
        if self.state == ClusterState.FAILED:
            return
        if self.state.terminal:
            raise InvalidTransitionError(f"cannot fail a run that already reached {self.state.value}")
        self.reason = reason
        self._enter(ClusterState.FAILED)

    def _enter(self, target: ClusterState) -> None:
        log.info("cluster state %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append((target.value, utc_now_iso()))
