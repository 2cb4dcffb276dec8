from __future__ import annotations

from typing import Callable

from clusterlab.core.errors import ClusterlabError, CommandTimeoutError, ConfigurationError
from clusterlab.core.logging import get_logger
from clusterlab.core.model import Role
from clusterlab.evidence import linux
from clusterlab.evidence.cluster import is_ready, node_statuses
from clusterlab.resilience.execution import Mode, wait_until
from clusterlab.topology import netconfig

from .base import make_result, skipped
from .context import RunContext

log = get_logger(__name__)

CPU_CONTENTION = "cpu-contention"
BOND_MEMBER_DOWN = "bond-member-down"
KNOWN_FAULTS = (CPU_CONTENTION, BOND_MEMBER_DOWN)

FAILOVER_PHASE = "bond-failover"


def cpu_stress_command(seconds: float) -> str:
    # one busy loop per CPU, detached so the caller returns at once
    busy = "for i in $(seq $(nproc)); do while :; do :; done & done; wait"
    return f"(nohup timeout {int(seconds)} sh -c '{busy}' >/dev/null 2>&1 &); echo clusterlab-stress"


def cpu_contention(ctx: RunContext) -> Callable[[], None]:
    """Settling-window hook that starves the primary's CPUs for a while."""

    def _inject() -> None:
        seconds = ctx.settings.cpu_stress_seconds
        log.info("injecting %.0fs of CPU contention on %s", seconds, ctx.primary)
        timer = ctx.timer()
        r = ctx.executor.run(ctx.primary, cpu_stress_command(seconds), Mode.BEST_EFFORT)
        ctx.report.add(
            make_result(
                "bootstrap-secondary",
                ctx.primary,
                r.ok,
                f"CPU contention for {seconds:.0f}s during the settling window",
                timer,
                command=cpu_stress_command(seconds),
                evidence={"fault": CPU_CONTENTION, "rc": r.rc},
            )
        )

    return _inject


def _failover_target(ctx: RunContext) -> str | None:
    alive = [w for w in ctx.alive() if w.bond is not None]
    for role in (Role.SECONDARY, Role.AGENT, Role.PRIMARY):
        for wiring in alive:
            if wiring.node.role == role:
                return wiring.name
    return None


def _cluster_ready(ctx: RunContext) -> bool:
    names = [w.name for w in ctx.alive()]
    _, statuses = node_statuses(ctx.executor, ctx.primary, ctx.settings.software, Mode.BEST_EFFORT)
    return all(is_ready(statuses.get(n)) for n in names)


def bond_failover(ctx: RunContext) -> None:
    """Take the active bond member down, check the backup takes over, restore it."""
    node = _failover_target(ctx)
    if node is None:
        ctx.report.add(skipped(FAILOVER_PHASE, "*", "no bonded node left to fail over"))
        return
    bond = ctx.plan.node(node).bond
    timer = ctx.timer()
    poll, timeout = ctx.settings.poll_interval, ctx.settings.settling_window or ctx.settings.poll_interval

    def _active() -> str | None:
        return linux.bond_state(ctx.executor, node, bond.name)["bond"]["active"]

    try:
        before = _active()
        if before is None:
            raise ConfigurationError(f"{node}: {bond.name} has no active member")
        backups = [m for m in bond.members if m != before]
        ctx.executor.run(node, netconfig.link_state_command(before, up=False))
        took_over = wait_until(lambda: _active() in backups, timeout, poll, ctx.clock, ctx.sleep)
        after = _active()
        stayed_ready = took_over and wait_until(
            lambda: _cluster_ready(ctx), ctx.settings.health_timeout, poll, ctx.clock, ctx.sleep
        )
        ctx.executor.run(node, netconfig.link_state_command(before, up=True))
        restored = wait_until(
            lambda: linux.bond_state(ctx.executor, node, bond.name)["bond"]["slaves"].get(before) == "up",
            timeout,
            poll,
            ctx.clock,
            ctx.sleep,
        )
    except ClusterlabError as exc:
        ctx.fail_node(FAILOVER_PHASE, node, exc, timer)
        return

    evidence = {"bond": bond.name, "failed_member": before, "active_after": after, "restored": restored}
    if not took_over:
        exc = CommandTimeoutError(f"{node}: {bond.name} did not fail over from {before}", node)
        ctx.fail_node(FAILOVER_PHASE, node, exc, timer)
        return
    if not stayed_ready:
        exc = CommandTimeoutError(f"cluster lost Ready while {node}/{before} was down", node)
        ctx.fail_node(FAILOVER_PHASE, node, exc, timer)
        return
    ctx.report.add(
        make_result(
            FAILOVER_PHASE,
            node,
            True,
            f"{bond.name} failed over {before} -> {after}, cluster stayed Ready",
            timer,
            command=netconfig.link_state_command(before, up=False),
            evidence=evidence,
        )
    )
