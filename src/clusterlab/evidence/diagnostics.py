from __future__ import annotations

from clusterlab.bootstrap import software
from clusterlab.core.config import SoftwareSettings
from clusterlab.core.errors import ClusterlabError
from clusterlab.core.logging import get_logger
from clusterlab.core.model import Role
from clusterlab.resilience.execution import Mode, NodeExecutor
from clusterlab.topology import netconfig
from clusterlab.topology.builder import WiringPlan

log = get_logger(__name__)


def diagnostic_commands(plan: WiringPlan, node: str, sw: SoftwareSettings, dhcp_unit: str) -> dict[str, str]:
    role = plan.node(node).node.role
    cmds = {"addresses": netconfig.brief_addresses_command(), "routes": netconfig.routes_command()}
    if role == Role.INFRASTRUCTURE:
        cmds["journal"] = software.journal_command(dhcp_unit)
        cmds["leases"] = f"cat {netconfig.DNSMASQ_LEASES}"
        return cmds
    cmds["journal"] = software.journal_command(software.unit_for(role, sw))
    bond = plan.node(node).bond
    if bond is not None:
        cmds["bond"] = netconfig.bond_state_command(bond.name)
    return cmds


def collect_diagnostics(
    executor: NodeExecutor,
    plan: WiringPlan,
    nodes: list[str],
    sw: SoftwareSettings,
    dhcp_unit: str,
) -> dict[str, dict[str, str]]:
    """Best-effort snapshot of failed nodes; unreachable nodes are noted, not raised."""
    out: dict[str, dict[str, str]] = {}
    for node in nodes:
        out[node] = {}
        for label, command in diagnostic_commands(plan, node, sw, dhcp_unit).items():
            try:
                r = executor.run(node, command, Mode.BEST_EFFORT)
            except ClusterlabError as exc:
                out[node][label] = f"unavailable: {exc}"
                break
            out[node][label] = r.output if r.output else f"(rc={r.rc}, no output)"
        log.debug("collected %d diagnostic items from %s", len(out[node]), node)
    return out
