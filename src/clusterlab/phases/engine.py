from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from clusterlab.adapters.base import VmBackend
from clusterlab.bootstrap.coordinator import BootstrapCoordinator
from clusterlab.core.config import HarnessSettings
from clusterlab.core.errors import ConfigurationError
from clusterlab.core.logging import capture_run_logs, get_logger
from clusterlab.core.model import ClusterState
from clusterlab.core.results import RunReport
from clusterlab.evidence.diagnostics import collect_diagnostics
from clusterlab.orchestrator.vms import VmOrchestrator
from clusterlab.resilience.execution import NodeExecutor
from clusterlab.topology.builder import WiringPlan
from clusterlab.utils.hashing import sha256_json
from clusterlab.utils.time import utc_now_iso

from . import boot, faults, network
from .base import fatal_from, make_result, skipped
from .context import RunContext

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    body: Callable[[RunContext], None]


def default_phases(fault_names: tuple[str, ...] = ()) -> list[Phase]:
    phases = [
        Phase("boot", boot.run),
        Phase("network", network.run),
        Phase("bootstrap-primary", lambda ctx: ctx.coordinator.bootstrap_primary()),
        Phase("bootstrap-secondary", lambda ctx: ctx.coordinator.join_secondaries()),
        Phase("bootstrap-agents", lambda ctx: ctx.coordinator.join_agents()),
    ]
    if faults.BOND_MEMBER_DOWN in fault_names:
        phases.append(Phase(faults.FAILOVER_PHASE, faults.bond_failover))
    phases.append(Phase("health", lambda ctx: ctx.coordinator.verify_cluster()))
    return phases


class PhaseEngine:
    """Runs phases strictly in order.

    A phase that raises ends the run: the error is recorded with its phase,
    node and command, the cluster state moves to FAILED and every later phase
    is reported as SKIPPED.
    """

    def __init__(self, phases: list[Phase]) -> None:
        self.phases = phases

    def run(self, ctx: RunContext) -> ClusterState:
        machine = ctx.coordinator.machine
        for index, phase in enumerate(self.phases):
            log.info("phase %s", phase.name)
            timer = ctx.timer()
            try:
                phase.body(ctx)
            except Exception as exc:
                fatal = fatal_from(phase.name, ctx.primary if phase.name.startswith("bootstrap") else "run", exc)
                log.error("phase %s failed on %s: %s", phase.name, fatal.node, exc)
                ctx.report.add_error(fatal)
                ctx.report.add(make_result(phase.name, fatal.node, False, str(exc), timer, command=fatal.command))
                machine.fail(f"{phase.name}: {exc}")
                for rest in self.phases[index + 1 :]:
                    ctx.report.add(skipped(rest.name, "*", f"skipped after fatal error in {phase.name}"))
                break
        if not machine.state.terminal:
            machine.fail("run ended before the cluster was verified")
        return machine.state


def build_context(
    plan: WiringPlan,
    settings: HarnessSettings,
    backend: VmBackend,
    report: RunReport,
    fault_names: tuple[str, ...] = (),
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> RunContext:
    orchestrator = VmOrchestrator(backend, plan, settings, clock, sleep)
    executor = NodeExecutor(orchestrator.channel, settings.command_timeout)
    failed: set[str] = set()
    coordinator = BootstrapCoordinator(plan, settings, executor, report, failed=failed, clock=clock, sleep=sleep)
    ctx = RunContext(plan, settings, orchestrator, executor, report, coordinator, fault_names, clock, sleep, failed)
    if faults.CPU_CONTENTION in fault_names:
        coordinator.on_settling = faults.cpu_contention(ctx)
    return ctx


def execute_run(
    plan: WiringPlan,
    settings: HarnessSettings,
    backend: VmBackend,
    fault_names: tuple[str, ...] = (),
    run_id: str | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> RunReport:
    unknown = [f for f in fault_names if f not in faults.KNOWN_FAULTS]
    if unknown:
        raise ConfigurationError(f"Unknown fault(s): {', '.join(unknown)}")

    profile = plan.profile
    report = RunReport(
        run=run_id or f"{profile.name}-{utc_now_iso()}",
        profile=profile.name,
        expected=ClusterState.FAILED if profile.expect_failure else ClusterState.CLUSTER_READY,
        metadata={
            "kind": profile.kind.value,
            "nodes": [w.name for w in plan.nodes],
            "faults": list(fault_names),
            "plan_sha256": sha256_json(plan.to_dict()),
            "started_at": utc_now_iso(),
        },
    )
    with capture_run_logs(report):
        ctx = build_context(plan, settings, backend, report, fault_names, clock, sleep)
        try:
            outcome = PhaseEngine(default_phases(fault_names)).run(ctx)
            if outcome == ClusterState.FAILED:
                suspects = sorted(ctx.failed) or [profile.primary.name]
                report.metadata["diagnostics"] = collect_diagnostics(
                    ctx.executor, plan, suspects, settings.software, settings.dhcp_unit
                )
        finally:
            ctx.orchestrator.teardown()
            ctx.coordinator.token.discard()
        report.outcome = outcome
        report.metadata["history"] = [{"state": s, "at": at} for s, at in ctx.coordinator.machine.history]
        report.metadata["finished_at"] = utc_now_iso()
        log.info("run %s finished: %s", report.run, outcome.value)
    return report
