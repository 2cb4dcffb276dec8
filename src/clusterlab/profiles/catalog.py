from __future__ import annotations

from dataclasses import replace
from typing import Callable

from clusterlab.core.errors import ProfileValidationError
from clusterlab.core.model import Role, TopologyKind
from clusterlab.topology.addressing import host_address

from .schema import BondSpec, DhcpServerSpec, InterfaceSpec, NetworkProfile, NodeSpec

Roster = tuple[tuple[str, Role], ...]

DEFAULT_ROSTER: Roster = (("server-1", Role.PRIMARY), ("server-2", Role.SECONDARY))
HA_AGENT_ROSTER: Roster = (
    ("server-1", Role.PRIMARY),
    ("server-2", Role.SECONDARY),
    ("agent-1", Role.AGENT),
)

FLAT_SUBNET = "192.168.1.0/24"
CLUSTER_SUBNET = "192.168.200.0/24"
STORAGE_SUBNET = "192.168.100.0/24"
CLUSTER_VLAN = 200
STORAGE_VLAN = 100
TRUNK = "eth1"

DHCP_SERVER_NAME = "dhcp-server"
DHCP_SERVER_ADDRESS = "192.168.1.254/24"


def _flat_node(name: str, role: Role, index: int, dhcp: bool = False) -> NodeSpec:
    address = None if dhcp else host_address(FLAT_SUBNET, index)
    iface = InterfaceSpec(network="cluster", name=TRUNK, address=address, dhcp=dhcp)
    return NodeSpec(name=name, role=role, host_index=index, interfaces=(iface,))


def _vlan_node(name: str, role: Role, index: int, base: str, cluster_vlan: int, storage_vlan: int) -> NodeSpec:
    return NodeSpec(
        name=name,
        role=role,
        host_index=index,
        interfaces=(
            InterfaceSpec(
                network="cluster",
                name=f"{base}.{cluster_vlan}",
                base=base,
                vlan=cluster_vlan,
                address=host_address(CLUSTER_SUBNET, index),
            ),
            InterfaceSpec(
                network="storage",
                name=f"{base}.{storage_vlan}",
                base=base,
                vlan=storage_vlan,
                address=host_address(STORAGE_SUBNET, index),
            ),
        ),
    )


def simple(roster: Roster, cluster_id: int = 1) -> NetworkProfile:
    return NetworkProfile(
        name="simple",
        kind=TopologyKind.FLAT,
        nodes=tuple(_flat_node(name, role, i) for i, (name, role) in enumerate(roster, start=1)),
        subnets=(("cluster", FLAT_SUBNET),),
        cluster_id=cluster_id,
        description="single flat network on eth1, static addresses",
    )


def vlans(roster: Roster, cluster_id: int = 1) -> NetworkProfile:
    return NetworkProfile(
        name="vlans",
        kind=TopologyKind.VLAN,
        nodes=tuple(
            _vlan_node(name, role, i, TRUNK, CLUSTER_VLAN, STORAGE_VLAN)
            for i, (name, role) in enumerate(roster, start=1)
        ),
        subnets=(("cluster", CLUSTER_SUBNET), ("storage", STORAGE_SUBNET)),
        cluster_id=cluster_id,
        description="802.1Q cluster VLAN 200 and storage VLAN 100 on eth1",
    )


def bonding_vlans(roster: Roster, cluster_id: int = 1) -> NetworkProfile:
    bond = BondSpec()
    return NetworkProfile(
        name="bonding-vlans",
        kind=TopologyKind.BONDED_VLAN,
        nodes=tuple(
            _vlan_node(name, role, i, bond.name, CLUSTER_VLAN, STORAGE_VLAN)
            for i, (name, role) in enumerate(roster, start=1)
        ),
        subnets=(("cluster", CLUSTER_SUBNET), ("storage", STORAGE_SUBNET)),
        bond=bond,
        cluster_id=cluster_id,
        description="eth1+eth2 active-backup bond0 carrying VLANs 200 and 100",
    )


def dhcp_simple(roster: Roster, cluster_id: int = 1) -> NetworkProfile:
    infra = NodeSpec(
        name=DHCP_SERVER_NAME,
        role=Role.INFRASTRUCTURE,
        host_index=0,
        interfaces=(InterfaceSpec(network="cluster", name=TRUNK, address=DHCP_SERVER_ADDRESS),),
        vcpus=1,
        memory_mb=512,
    )
    return NetworkProfile(
        name="dhcp-simple",
        kind=TopologyKind.DHCP,
        nodes=tuple(_flat_node(name, role, i, dhcp=True) for i, (name, role) in enumerate(roster, start=1)),
        subnets=(("cluster", FLAT_SUBNET),),
        infrastructure=infra,
        dhcp=DhcpServerSpec(
            address=DHCP_SERVER_ADDRESS.split("/")[0],
            subnet=FLAT_SUBNET,
            range_start="192.168.1.100",
            range_end="192.168.1.200",
        ),
        cluster_id=cluster_id,
        description="flat network, addresses from MAC reservations on a dnsmasq node",
    )


def vlans_broken(roster: Roster, cluster_id: int = 1) -> NetworkProfile:
    # Only the primary gets the right tags; everybody else is isolated.
    nodes = tuple(
        _vlan_node(name, role, i, TRUNK, CLUSTER_VLAN + i - 1, STORAGE_VLAN + i - 1)
        for i, (name, role) in enumerate(roster, start=1)
    )
    return NetworkProfile(
        name="vlans-broken",
        kind=TopologyKind.VLAN,
        nodes=nodes,
        subnets=(("cluster", CLUSTER_SUBNET), ("storage", STORAGE_SUBNET)),
        cluster_id=cluster_id,
        expect_failure=True,
        description="per-node mismatched VLAN ids, cluster formation must fail",
    )


CATALOG: dict[str, Callable[..., NetworkProfile]] = {
    "simple": simple,
    "vlans": vlans,
    "bonding-vlans": bonding_vlans,
    "dhcp-simple": dhcp_simple,
    "vlans-broken": vlans_broken,
}


def build_profile(
    name: str,
    roster: Roster = DEFAULT_ROSTER,
    cluster_id: int = 1,
    images: dict[str, str] | None = None,
) -> NetworkProfile:
    if name not in CATALOG:
        raise ProfileValidationError(f"Unknown network profile {name!r}; known: {', '.join(sorted(CATALOG))}")
    profile = CATALOG[name](roster, cluster_id)
    return with_images(profile, images or {})


def with_images(profile: NetworkProfile, images: dict[str, str]) -> NetworkProfile:
    if not images:
        return profile
    default = images.get("*")

    def _apply(node: NodeSpec) -> NodeSpec:
        image = images.get(node.name, default)
        return replace(node, image=image) if image else node

    infra = _apply(profile.infrastructure) if profile.infrastructure else None
    return replace(profile, nodes=tuple(_apply(n) for n in profile.nodes), infrastructure=infra)
