from __future__ import annotations

from dataclasses import dataclass

from clusterlab.core.model import Role, TopologyKind


@dataclass(frozen=True, slots=True)
class BondSpec:
    name: str = "bond0"
    members: tuple[str, ...] = ("eth1", "eth2")
    mode: str = "active-backup"
    primary: str = "eth1"
    miimon: int = 100


@dataclass(frozen=True, slots=True)
class InterfaceSpec:
    """One logical network on a node.

    ``name`` is the OS interface carrying the address (``eth1``, ``eth1.200``,
    ``bond0.200``); ``base`` is the link a VLAN sub-interface is stacked on.
    ``address`` is a CIDR string, or None when the address comes from DHCP.
    """

    network: str
    name: str
    base: str | None = None
    vlan: int | None = None
    address: str | None = None
    dhcp: bool = False

    @property
    def ip(self) -> str | None:
        return self.address.split("/")[0] if self.address else None


@dataclass(frozen=True, slots=True)
class NodeSpec:
    name: str
    role: Role
    host_index: int
    interfaces: tuple[InterfaceSpec, ...]
    image: str | None = None
    vcpus: int = 2
    memory_mb: int = 3072

    def interface(self, network: str) -> InterfaceSpec | None:
        for spec in self.interfaces:
            if spec.network == network:
                return spec
        return None


@dataclass(frozen=True, slots=True)
class DhcpServerSpec:
    address: str
    subnet: str
    range_start: str
    range_end: str
    lease_time: str = "12h"
    interface: str = "eth1"
    gateway: str | None = None


@dataclass(frozen=True, slots=True)
class NetworkProfile:
    name: str
    kind: TopologyKind
    nodes: tuple[NodeSpec, ...]
    subnets: tuple[tuple[str, str], ...]
    bond: BondSpec | None = None
    infrastructure: NodeSpec | None = None
    dhcp: DhcpServerSpec | None = None
    cluster_id: int = 1
    expect_failure: bool = False
    description: str = ""

    def node(self, name: str) -> NodeSpec:
        for node in self.all_nodes():
            if node.name == name:
                return node
        raise KeyError(name)

    def all_nodes(self) -> tuple[NodeSpec, ...]:
        if self.infrastructure is None:
            return self.nodes
        return (self.infrastructure, *self.nodes)

    def subnet(self, network: str) -> str | None:
        return dict(self.subnets).get(network)

    def by_role(self, role: Role) -> list[NodeSpec]:
        return [n for n in self.nodes if n.role == role]

    @property
    def primary(self) -> NodeSpec:
        primaries = self.by_role(Role.PRIMARY)
        if len(primaries) != 1:
            raise ValueError(f"profile {self.name} has {len(primaries)} primaries")
        return primaries[0]
