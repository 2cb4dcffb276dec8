from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from clusterlab.bootstrap.coordinator import BootstrapCoordinator
from clusterlab.core.config import HarnessSettings
from clusterlab.core.results import RunReport
from clusterlab.orchestrator.vms import VmOrchestrator
from clusterlab.resilience.execution import NodeExecutor
from clusterlab.topology.builder import NodeWiring, WiringPlan

from .base import PhaseTimer


@dataclass(slots=True)
class RunContext:
    plan: WiringPlan
    settings: HarnessSettings
    orchestrator: VmOrchestrator
    executor: NodeExecutor
    report: RunReport
    coordinator: BootstrapCoordinator
    faults: tuple[str, ...] = ()
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    failed: set[str] = field(default_factory=set)

    @property
    def primary(self) -> str:
        return self.plan.profile.primary.name

    def alive(self) -> list[NodeWiring]:
        return [w for w in self.plan.cluster_nodes() if w.name not in self.failed]

    def timer(self) -> PhaseTimer:
        return PhaseTimer(self.clock)

    def fail_node(self, phase: str, node: str, exc: BaseException, timer: PhaseTimer) -> None:
        """Primary failures end the run; anything else only ends that node's branch."""
        if node == self.primary:
            raise exc
        self.coordinator.fail_node(phase, node, exc, timer)
