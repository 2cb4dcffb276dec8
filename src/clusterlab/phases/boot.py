from __future__ import annotations

from clusterlab.core.errors import CommandTimeoutError
from clusterlab.core.logging import get_logger
from clusterlab.core.model import Role
from clusterlab.resilience.execution import Mode, wait_until
from clusterlab.topology import netconfig
from clusterlab.topology.builder import NodeWiring

from .base import make_result
from .context import RunContext

log = get_logger(__name__)

PHASE = "boot"


def provision_dhcp_server(ctx: RunContext, wiring: NodeWiring) -> None:
    """Configure dnsmasq with the MAC reservations and wait until it listens."""
    timer = ctx.timer()
    unit = ctx.settings.dhcp_unit
    ctx.executor.run_all(wiring.name, netconfig.dhcp_server_commands(ctx.plan, wiring, unit))

    def _listening() -> bool:
        return ctx.executor.run(wiring.name, netconfig.dhcp_listening_command(), Mode.BEST_EFFORT).ok

    if not wait_until(_listening, ctx.settings.lease_timeout, ctx.settings.poll_interval, ctx.clock, ctx.sleep):
        raise CommandTimeoutError(
            f"{unit} on {wiring.name} is not listening on :67", wiring.name, netconfig.dhcp_listening_command()
        )
    ctx.report.add(
        make_result(
            PHASE,
            wiring.name,
            True,
            f"{unit} serving {len(ctx.plan.reservations)} reservations",
            timer,
            evidence={"reservations": [r.dnsmasq_line() for r in ctx.plan.reservations]},
        )
    )


def after_wave(ctx: RunContext, wave: list[NodeWiring]) -> None:
    for wiring in wave:
        if wiring.node.role == Role.INFRASTRUCTURE and ctx.plan.profile.dhcp is not None:
            provision_dhcp_server(ctx, wiring)


def run(ctx: RunContext) -> None:
    timer = ctx.timer()
    times = ctx.orchestrator.boot(after_wave=lambda wave: after_wave(ctx, wave))
    for wiring in ctx.plan.nodes:
        ctx.report.add(
            make_result(
                PHASE,
                wiring.name,
                True,
                f"reached {ctx.settings.boot_marker}",
                timer,
                evidence={"boot_s": round(times.get(wiring.name, 0.0), 3), "role": wiring.node.role.value},
            )
        )
    log.info("all %d nodes booted", len(ctx.plan.nodes))
