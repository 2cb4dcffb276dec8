from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any

from clusterlab.core.errors import ClusterlabError, CommandTimeoutError, ConfigurationError
from clusterlab.core.logging import get_logger
from clusterlab.evidence import linux
from clusterlab.resilience.execution import Mode, wait_until
from clusterlab.topology import netconfig
from clusterlab.topology.builder import NodeWiring

from .base import make_result
from .context import RunContext

log = get_logger(__name__)

PHASE = "network"


def _await_lease(ctx: RunContext, wiring: NodeWiring, interface: str) -> dict[str, Any]:
    expected = ctx.plan.expected_address(wiring.name)
    subnet = ctx.plan.profile.subnet("cluster") or ctx.plan.profile.dhcp.subnet
    seen: dict[str, Any] = {}

    def _leased() -> bool:
        seen.update(linux.lease(ctx.executor, wiring.name, interface))
        addresses = [a["address"] for a in seen.get("addresses", [])]
        return expected in addresses and linux.routes_contain(seen.get("routes", ""), subnet)

    ctx.executor.run(wiring.name, netconfig.dhcp_renew_command(interface), Mode.BEST_EFFORT)
    if not wait_until(_leased, ctx.settings.lease_timeout, ctx.settings.poll_interval, ctx.clock, ctx.sleep):
        got = [a["address"] for a in seen.get("addresses", [])]
        raise CommandTimeoutError(
            f"{wiring.name}: no lease for {expected} on {interface} within {ctx.settings.lease_timeout:.0f}s (has {got})",
            wiring.name,
            netconfig.ipv4_addresses_command(interface),
        )
    return {"lease": expected, "interface": interface}


def _verify_vlans(ctx: RunContext, wiring: NodeWiring) -> dict[str, Any]:
    evidence: dict[str, Any] = {}
    for membership in wiring.memberships:
        if membership.vlan is None:
            continue
        found = linux.vlan_id(ctx.executor, wiring.name, membership.interface)
        if found["vlan"] != membership.vlan:
            raise ConfigurationError(
                f"{wiring.name}: {membership.interface} carries VLAN {found['vlan']}, expected {membership.vlan}"
            )
        evidence[membership.interface] = found["vlan"]

    cluster = wiring.membership("cluster")
    if cluster is not None and cluster.vlan is not None:
        address = ctx.plan.expected_address(wiring.name)
        holders = linux.interface_holding(linux.brief(ctx.executor, wiring.name)["interfaces"], address)
        if holders != [cluster.interface]:
            raise ConfigurationError(
                f"{wiring.name}: cluster address {address} found on {holders or 'no interface'}, "
                f"expected only {cluster.interface}"
            )
        evidence["cluster_interface"] = cluster.interface
    return evidence


def _verify_bond(ctx: RunContext, wiring: NodeWiring) -> dict[str, Any]:
    bond = wiring.bond
    if bond is None:
        return {}
    state = linux.bond_state(ctx.executor, wiring.name, bond.name, Mode.ABORT)["bond"]
    down = [name for name in bond.members if state["slaves"].get(name) != "up"]
    if not linux.is_active_backup(state):
        raise ConfigurationError(f"{wiring.name}: {bond.name} mode is {state['mode']}, expected active-backup")
    if down:
        raise ConfigurationError(f"{wiring.name}: {bond.name} members not up: {', '.join(down)}")
    if state["active"] != bond.primary:
        raise ConfigurationError(f"{wiring.name}: {bond.name} active member is {state['active']}, expected {bond.primary}")
    return {"bond": bond.name, "active": state["active"], "members": state["slaves"]}


def configure_node(ctx: RunContext, wiring: NodeWiring) -> dict[str, Any]:
    ctx.executor.run_all(wiring.name, netconfig.setup_commands(wiring))
    evidence: dict[str, Any] = {"address": None}
    directive = wiring.address("cluster")
    if directive is not None and directive.dhcp:
        evidence.update(_await_lease(ctx, wiring, directive.interface))
    evidence["address"] = ctx.plan.expected_address(wiring.name)
    evidence.update(_verify_vlans(ctx, wiring))
    evidence.update(_verify_bond(ctx, wiring))
    return evidence


def _configure(ctx: RunContext, wiring: NodeWiring) -> None:
    timer = ctx.timer()
    try:
        evidence = configure_node(ctx, wiring)
    except ClusterlabError as exc:
        ctx.fail_node(PHASE, wiring.name, exc, timer)
        return
    ctx.report.add(make_result(PHASE, wiring.name, True, f"configured {evidence['address']}", timer, evidence=evidence))


def check_reachability(ctx: RunContext) -> None:
    """Every node pings the primary's cluster address. Recorded, never fatal."""
    target = ctx.plan.expected_ip(ctx.primary)
    attempts = max(1, ctx.settings.prewarm_attempts)
    for wiring in ctx.alive():
        if wiring.name == ctx.primary:
            continue
        timer = ctx.timer()
        result: dict[str, Any] = {}
        for _ in range(attempts):
            result = linux.ping(ctx.executor, wiring.name, target)
            if result["rc"] == 0:
                break
        ok = result.get("rc") == 0
        if not ok:
            log.warning("%s cannot reach %s on the cluster network", wiring.name, target)
        ctx.report.add(
            make_result(
                PHASE,
                wiring.name,
                ok,
                f"{'reaches' if ok else 'cannot reach'} {ctx.primary} at {target}",
                timer,
                command=netconfig.ping_command(target),
                evidence={"rc": result.get("rc")},
            )
        )


def run(ctx: RunContext) -> None:
    # the primary first: its failure ends the run before anything else is touched
    _configure(ctx, ctx.plan.node(ctx.primary))
    others = [w for w in ctx.alive() if w.name != ctx.primary]
    if others:
        with ThreadPoolExecutor(max_workers=len(others), thread_name_prefix="net") as pool:
            for future in [pool.submit(_configure, ctx, w) for w in others]:
                future.result()
    check_reachability(ctx)

    infra = ctx.plan.infrastructure()
    if infra and ctx.settings.stop_infra_after_leases:
        for wiring in infra:
            timer = ctx.timer()
            ctx.orchestrator.stop(wiring.name)
            ctx.report.add(make_result(PHASE, wiring.name, True, "shut down after leases were verified", timer))
