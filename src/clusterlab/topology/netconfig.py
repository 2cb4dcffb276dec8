from __future__ import annotations

from clusterlab.utils.shell import write_file

from .addressing import render_dnsmasq_config
from .builder import NodeWiring, WiringPlan

DNSMASQ_CONF = "/etc/dnsmasq.d/clusterlab.conf"
DNSMASQ_LEASES = "/var/lib/misc/dnsmasq.leases"


def hostname_commands(wiring: NodeWiring) -> list[str]:
    name = wiring.name
    return [f"hostnamectl set-hostname {name} 2>/dev/null || hostname {name}"]


def bond_commands(wiring: NodeWiring) -> list[str]:
    bond = wiring.bond
    if bond is None:
        return []
    cmds = [
        "modprobe bonding 2>/dev/null || true",
        f"ip link show {bond.name} >/dev/null 2>&1 || "
        f"ip link add {bond.name} type bond mode {bond.mode} miimon {bond.miimon}",
    ]
    # members must be down to be enslaved
    for member in bond.members:
        cmds.append(f"ip link set {member} down")
        cmds.append(f"ip link set {member} master {bond.name}")
    cmds.append(f"ip link set {bond.name} type bond primary {bond.primary}")
    cmds.extend(f"ip link set {member} up" for member in bond.members)
    cmds.append(f"ip link set {bond.name} up")
    return cmds


def vlan_commands(wiring: NodeWiring) -> list[str]:
    vlans = [m for m in wiring.memberships if m.vlan is not None]
    if not vlans:
        return []
    cmds = ["modprobe 8021q 2>/dev/null || true"]
    for spec in wiring.node.interfaces:
        if spec.vlan is None or not spec.base:
            continue
        cmds.append(f"ip link set {spec.base} up")
        cmds.append(
            f"ip link show {spec.name} >/dev/null 2>&1 || "
            f"ip link add link {spec.base} name {spec.name} type vlan id {spec.vlan}"
        )
        cmds.append(f"ip link set {spec.name} up")
    return cmds


def address_commands(wiring: NodeWiring) -> list[str]:
    cmds: list[str] = []
    for directive in wiring.addresses:
        cmds.append(f"ip link set {directive.interface} up")
        if directive.dhcp:
            continue
        cmds.append(f"ip addr flush dev {directive.interface}")
        cmds.append(f"ip addr add {directive.address} dev {directive.interface}")
    return cmds


def setup_commands(wiring: NodeWiring) -> list[str]:
    """Idempotent commands that bring a booted node's links to the wiring plan."""
    return hostname_commands(wiring) + bond_commands(wiring) + vlan_commands(wiring) + address_commands(wiring)


def dhcp_renew_command(interface: str) -> str:
    return f"networkctl renew {interface} 2>/dev/null || true"


def dhcp_server_commands(plan: WiringPlan, wiring: NodeWiring, unit: str) -> list[str]:
    dhcp = plan.profile.dhcp
    if dhcp is None:
        return []
    conf = render_dnsmasq_config(
        list(plan.reservations),
        interface=dhcp.interface,
        listen_address=dhcp.address,
        range_start=dhcp.range_start,
        range_end=dhcp.range_end,
        lease_time=dhcp.lease_time,
        gateway=dhcp.gateway,
    )
    return setup_commands(wiring) + [write_file(DNSMASQ_CONF, conf), f"systemctl restart {unit}"]


def dhcp_listening_command() -> str:
    return "ss -ulnp | grep -q ':67 '"


def brief_addresses_command() -> str:
    return "ip -br addr show"


def ipv4_addresses_command(interface: str) -> str:
    return f"ip -4 addr show dev {interface}"


def routes_command() -> str:
    return "ip route show"


def link_details_command(interface: str) -> str:
    return f"ip -d link show {interface}"


def bond_state_command(bond: str) -> str:
    return f"cat /proc/net/bonding/{bond}"


def link_state_command(interface: str, up: bool) -> str:
    return f"ip link set {interface} {'up' if up else 'down'}"


def ping_command(ip: str, timeout: int = 2) -> str:
    return f"ping -c 1 -W {timeout} {ip}"
