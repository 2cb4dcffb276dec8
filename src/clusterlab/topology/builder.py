from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Any

from clusterlab.core.errors import ProfileValidationError
from clusterlab.core.logging import get_logger
from clusterlab.core.model import Role, TopologyKind
from clusterlab.profiles.schema import BondSpec, InterfaceSpec, NetworkProfile, NodeSpec

from .addressing import NicRole, Reservation, host_address, in_subnet, mac_address

log = get_logger(__name__)

_VLAN_KINDS = {TopologyKind.VLAN, TopologyKind.BONDED_VLAN}


@dataclass(frozen=True, slots=True)
class NicAttachment:
    nic: str
    switch: str
    mac: str


@dataclass(frozen=True, slots=True)
class Membership:
    network: str
    switch: str
    vlan: int | None
    interface: str


@dataclass(frozen=True, slots=True)
class AddressDirective:
    network: str
    interface: str
    address: str | None
    dhcp: bool

    @property
    def ip(self) -> str | None:
        return self.address.split("/")[0] if self.address else None


@dataclass(frozen=True, slots=True)
class NodeWiring:
    node: NodeSpec
    nics: tuple[NicAttachment, ...]
    memberships: tuple[Membership, ...]
    addresses: tuple[AddressDirective, ...]
    bond: BondSpec | None = None

    @property
    def name(self) -> str:
        return self.node.name

    def pairs(self) -> list[tuple[str, int | None]]:
        return [(m.switch, m.vlan) for m in self.memberships]

    def membership(self, network: str) -> Membership | None:
        return next((m for m in self.memberships if m.network == network), None)

    def address(self, network: str) -> AddressDirective | None:
        return next((a for a in self.addresses if a.network == network), None)

    def mac(self, nic: str) -> str:
        for attachment in self.nics:
            if attachment.nic == nic:
                return attachment.mac
        raise KeyError(f"{self.name} has no NIC {nic}")


@dataclass(frozen=True, slots=True)
class WiringPlan:
    profile: NetworkProfile
    switches: tuple[str, ...]
    nodes: tuple[NodeWiring, ...]
    reservations: tuple[Reservation, ...]

    def node(self, name: str) -> NodeWiring:
        for wiring in self.nodes:
            if wiring.name == name:
                return wiring
        raise KeyError(name)

    def cluster_nodes(self) -> list[NodeWiring]:
        return [w for w in self.nodes if w.node.role != Role.INFRASTRUCTURE]

    def infrastructure(self) -> list[NodeWiring]:
        return [w for w in self.nodes if w.node.role == Role.INFRASTRUCTURE]

    def boot_waves(self) -> list[list[NodeWiring]]:
        infra = self.infrastructure()
        rest = self.cluster_nodes()
        return [infra, rest] if infra else [rest]

    def reservation(self, node: str) -> Reservation | None:
        return next((r for r in self.reservations if r.node == node), None)

    def expected_address(self, node: str, network: str = "cluster") -> str:
        """CIDR a node ends up with on ``network``, whichever way it is assigned."""
        directive = self.node(node).address(network)
        if directive is None:
            raise KeyError(f"{node} is not on network {network}")
        if directive.address:
            return directive.address
        reservation = self.reservation(node)
        subnet = self.profile.subnet(network) or (self.profile.dhcp.subnet if self.profile.dhcp else None)
        if reservation is None or subnet is None:
            raise KeyError(f"{node} has no reservation on {network}")
        prefix = ipaddress.ip_network(subnet).prefixlen
        return f"{reservation.ip}/{prefix}"

    def expected_ip(self, node: str, network: str = "cluster") -> str:
        return self.expected_address(node, network).split("/")[0]

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile.name,
            "kind": self.profile.kind.value,
            "switches": list(self.switches),
            "nodes": {
                w.name: {
                    "role": w.node.role.value,
                    "nics": [{"nic": n.nic, "switch": n.switch, "mac": n.mac} for n in w.nics],
                    "memberships": [
                        {"network": m.network, "switch": m.switch, "vlan": m.vlan, "interface": m.interface}
                        for m in w.memberships
                    ],
                    "addresses": [
                        {"network": a.network, "interface": a.interface, "address": a.address, "dhcp": a.dhcp}
                        for a in w.addresses
                    ],
                }
                for w in self.nodes
            },
            "reservations": [{"node": r.node, "mac": r.mac, "ip": r.ip} for r in self.reservations],
        }


def _switch_for_nic(nic: str) -> str:
    m = re.fullmatch(r"[a-z]+(\d+)", nic)
    return f"lan{m.group(1)}" if m else f"lan-{nic}"


def _root_link(spec: InterfaceSpec) -> str:
    return spec.base if spec.base else spec.name


def _check_interface(profile: NetworkProfile, node: NodeSpec, spec: InterfaceSpec, errors: list[str]) -> None:
    where = f"{node.name}/{spec.name}"
    if spec.vlan is not None:
        if profile.kind not in _VLAN_KINDS:
            errors.append(f"{where}: VLAN tag {spec.vlan} requested on {profile.kind.value} topology")
        if not spec.base:
            errors.append(f"{where}: VLAN tag {spec.vlan} requested without a base interface")
        elif spec.base == spec.name:
            errors.append(f"{where}: VLAN sub-interface cannot share its base interface name")
        if not 1 <= spec.vlan <= 4094:
            errors.append(f"{where}: VLAN id {spec.vlan} outside 1-4094")
    elif spec.base:
        errors.append(f"{where}: base interface {spec.base} given without a VLAN tag")

    if profile.kind in _VLAN_KINDS and spec.network == "cluster" and spec.vlan is None:
        errors.append(f"{where}: cluster network must be VLAN-tagged on {profile.kind.value} topology")

    bond = profile.bond
    if bond is not None and profile.kind == TopologyKind.BONDED_VLAN:
        if spec.vlan is not None and spec.base != bond.name:
            errors.append(f"{where}: VLAN sub-interfaces must sit on {bond.name}, not on {spec.base}")
        if _root_link(spec) in bond.members:
            errors.append(f"{where}: {_root_link(spec)} is a member of {bond.name} and cannot carry traffic directly")

    if spec.address is None and not spec.dhcp:
        errors.append(f"{where}: neither a static address nor DHCP given")
    if spec.address is not None:
        try:
            ipaddress.ip_interface(spec.address)
        except ValueError:
            errors.append(f"{where}: invalid address {spec.address!r}")
            return
        subnet = profile.subnet(spec.network)
        try:
            if subnet and not in_subnet(spec.address, subnet):
                errors.append(f"{where}: {spec.address} is outside the {spec.network} subnet {subnet}")
        except ValueError:
            errors.append(f"{where}: invalid {spec.network} subnet {subnet!r}")


def validate_profile(profile: NetworkProfile) -> None:
    errors: list[str] = []
    if not profile.nodes:
        errors.append("profile has no cluster nodes")

    names = [n.name for n in profile.all_nodes()]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        errors.append(f"duplicate node names: {', '.join(dupes)}")
    indexes = [n.host_index for n in profile.all_nodes()]
    if len(indexes) != len(set(indexes)):
        errors.append("host indexes must be unique")
    # both end up as single MAC octets
    if not 0 <= profile.cluster_id <= 0xFF:
        errors.append(f"cluster id {profile.cluster_id} outside 0-255")
    for node in profile.all_nodes():
        if not 0 <= node.host_index <= 0xFF:
            errors.append(f"{node.name}: host index {node.host_index} outside 0-255")

    primaries = [n.name for n in profile.nodes if n.role == Role.PRIMARY]
    if len(primaries) != 1:
        errors.append(f"exactly one {Role.PRIMARY.value} node required, found {len(primaries)}")
    for node in profile.nodes:
        if node.role == Role.INFRASTRUCTURE:
            errors.append(f"{node.name}: infrastructure nodes belong in profile.infrastructure")
    if profile.infrastructure is not None and profile.infrastructure.role != Role.INFRASTRUCTURE:
        errors.append(f"{profile.infrastructure.name}: infrastructure node must have role {Role.INFRASTRUCTURE.value}")

    if profile.kind == TopologyKind.BONDED_VLAN:
        bond = profile.bond
        if bond is None:
            errors.append("bonded-vlan topology requires a bond definition")
        else:
            if len(bond.members) < 2:
                errors.append(f"{bond.name}: active-backup bond needs at least two members")
            if bond.mode != "active-backup":
                errors.append(f"{bond.name}: mode must be active-backup, got {bond.mode}")
            if bond.primary not in bond.members:
                errors.append(f"{bond.name}: primary {bond.primary} is not a member")
    elif profile.bond is not None:
        errors.append(f"bond {profile.bond.name} defined on {profile.kind.value} topology")

    wants_dhcp = profile.kind == TopologyKind.DHCP or any(i.dhcp for n in profile.nodes for i in n.interfaces)
    if wants_dhcp and profile.infrastructure is None:
        errors.append("DHCP addressing requested without an infrastructure node")
    if wants_dhcp and profile.dhcp is None:
        errors.append("DHCP addressing requested without a dhcp server definition")
    if profile.dhcp is not None:
        try:
            if not in_subnet(profile.dhcp.address, profile.dhcp.subnet):
                errors.append(f"dhcp server {profile.dhcp.address} is outside {profile.dhcp.subnet}")
        except ValueError as exc:
            errors.append(f"dhcp: {exc}")
        else:
            for node in profile.nodes:
                if not any(i.dhcp for i in node.interfaces):
                    continue
                try:
                    host_address(profile.dhcp.subnet, node.host_index)
                except ValueError as exc:
                    errors.append(f"{node.name}: {exc}")

    seen: dict[tuple[str, str], str] = {}
    for node in profile.all_nodes():
        networks = [i.network for i in node.interfaces]
        for network in sorted({n for n in networks if networks.count(n) > 1}):
            errors.append(f"{node.name}: wired twice to network {network}")
        if node.role != Role.INFRASTRUCTURE and "cluster" not in networks:
            errors.append(f"{node.name}: no interface on the cluster network")
        vlans = [i.vlan for i in node.interfaces if i.vlan is not None]
        if len(vlans) != len(set(vlans)):
            errors.append(f"{node.name}: the same VLAN id is used for two networks")
        for spec in node.interfaces:
            _check_interface(profile, node, spec, errors)
            if spec.ip:
                key = (spec.network, spec.ip)
                if key in seen:
                    errors.append(f"{node.name}: address {spec.ip} already used by {seen[key]}")
                seen[key] = node.name

    if errors:
        raise ProfileValidationError(f"profile {profile.name} rejected: " + "; ".join(errors))


def _wire_node(profile: NetworkProfile, node: NodeSpec) -> NodeWiring:
    bond = profile.bond if profile.kind == TopologyKind.BONDED_VLAN else None
    nic_switch: dict[str, str] = {}
    memberships: list[Membership] = []
    carries_cluster: set[str] = set()

    for spec in node.interfaces:
        root = _root_link(spec)
        if bond is not None and root == bond.name:
            switch = _switch_for_nic(bond.members[0])
            for member in bond.members:
                nic_switch.setdefault(member, switch)
            links = set(bond.members)
        else:
            switch = _switch_for_nic(root)
            nic_switch.setdefault(root, switch)
            links = {root}
        if spec.network == "cluster":
            carries_cluster |= links
        memberships.append(Membership(spec.network, switch, spec.vlan, spec.name))

    nics = []
    for nic in nic_switch:
        if bond is not None and nic in bond.members and nic != bond.primary:
            role = NicRole.BOND_BACKUP
        elif nic in carries_cluster:
            role = NicRole.CLUSTER
        else:
            role = NicRole.STORAGE
        nics.append(NicAttachment(nic, nic_switch[nic], mac_address(profile.cluster_id, role, node.host_index)))

    addresses = tuple(AddressDirective(s.network, s.name, s.address, s.dhcp) for s in node.interfaces)
    return NodeWiring(node, tuple(nics), tuple(memberships), addresses, bond)


def _reservations(profile: NetworkProfile, wirings: list[NodeWiring]) -> list[Reservation]:
    if profile.dhcp is None:
        return []
    out = []
    for wiring in wirings:
        if wiring.node.role == Role.INFRASTRUCTURE:
            continue
        directive = wiring.address("cluster")
        if directive is None or not directive.dhcp:
            continue
        membership = wiring.membership("cluster")
        nic = directive.interface if membership is None or membership.vlan is None else None
        if nic is None:
            raise ProfileValidationError(f"{wiring.name}: DHCP on a VLAN sub-interface is not supported")
        ip = host_address(profile.dhcp.subnet, wiring.node.host_index).split("/")[0]
        out.append(Reservation(wiring.name, wiring.mac(nic), ip))
    return out


def build_wiring(profile: NetworkProfile) -> WiringPlan:
    validate_profile(profile)
    wirings = [_wire_node(profile, node) for node in profile.all_nodes()]

    errors = []
    macs: dict[str, str] = {}
    for wiring in wirings:
        for nic in wiring.nics:
            if nic.mac in macs:
                errors.append(f"MAC {nic.mac} of {wiring.name}/{nic.nic} collides with {macs[nic.mac]}")
            macs[nic.mac] = f"{wiring.name}/{nic.nic}"

    infra = [w for w in wirings if w.node.role == Role.INFRASTRUCTURE]
    for server in infra:
        home = server.membership("cluster")
        for wiring in wirings:
            if wiring is server:
                continue
            theirs = wiring.membership("cluster")
            if home is None or theirs is None or theirs.switch != home.switch:
                errors.append(f"{server.name} does not share a switch with {wiring.name}")
    if errors:
        raise ProfileValidationError(f"profile {profile.name} rejected: " + "; ".join(errors))

    switches = tuple(sorted({nic.switch for w in wirings for nic in w.nics}))
    plan = WiringPlan(profile, switches, tuple(wirings), tuple(_reservations(profile, wirings)))
    log.debug("wiring plan for %s: %d nodes on %s", profile.name, len(wirings), ", ".join(switches))
    return plan
