from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from clusterlab.core.errors import ProfileValidationError
from clusterlab.core.model import Role, TopologyKind
from clusterlab.utils.yaml import load_yaml

from .schema import BondSpec, DhcpServerSpec, InterfaceSpec, NetworkProfile, NodeSpec

_ROLE_ALIASES = {
    "primary": Role.PRIMARY,
    "secondary": Role.SECONDARY,
    "agent": Role.AGENT,
    "infra": Role.INFRASTRUCTURE,
}


def _required(data: dict, key: str, where: str):
    if key not in data:
        raise ProfileValidationError(f"Missing required key: {where}.{key}")
    return data[key]


def _role(value: str, where: str) -> Role:
    if value in _ROLE_ALIASES:
        return _ROLE_ALIASES[value]
    try:
        return Role(value)
    except ValueError:
        raise ProfileValidationError(f"{where}: unknown role {value!r}") from None


def _kind(value: str) -> TopologyKind:
    try:
        return TopologyKind(value)
    except ValueError:
        known = ", ".join(k.value for k in TopologyKind)
        raise ProfileValidationError(f"Unknown topology kind {value!r}; expected one of {known}") from None


def _interface(data: dict[str, Any], where: str) -> InterfaceSpec:
    vlan = data.get("vlan")
    address = data.get("address")
    dhcp = bool(data.get("dhcp", address is None))
    return InterfaceSpec(
        network=str(_required(data, "network", where)),
        name=str(_required(data, "name", where)),
        base=str(data["base"]) if data.get("base") else None,
        vlan=int(vlan) if vlan is not None else None,
        address=str(address) if address else None,
        dhcp=dhcp,
    )


def _node(data: dict[str, Any], index: int, where: str) -> NodeSpec:
    name = str(_required(data, "name", where))
    raw_ifaces = _required(data, "interfaces", f"{where}[{name}]")
    if not isinstance(raw_ifaces, list) or not raw_ifaces:
        raise ProfileValidationError(f"{where}[{name}].interfaces must be a non-empty list")
    return NodeSpec(
        name=name,
        role=_role(str(_required(data, "role", where)), f"{where}[{name}]"),
        host_index=int(data.get("host_index", index)),
        interfaces=tuple(_interface(i, f"{where}[{name}].interfaces") for i in raw_ifaces),
        image=str(data["image"]) if data.get("image") else None,
        vcpus=int(data.get("vcpus", 2)),
        memory_mb=int(data.get("memory_mb", 3072)),
    )


def profile_from_dict(data: dict[str, Any]) -> NetworkProfile:
    raw_nodes = _required(data, "nodes", "profile")
    if not isinstance(raw_nodes, list):
        raise ProfileValidationError("profile.nodes must be a list")

    bond = None
    if data.get("bond"):
        b = data["bond"]
        bond = BondSpec(
            name=str(b.get("name", "bond0")),
            members=tuple(str(m) for m in b.get("members", [])),
            mode=str(b.get("mode", "active-backup")),
            primary=str(b.get("primary", (b.get("members") or ["eth1"])[0])),
            miimon=int(b.get("miimon", 100)),
        )

    dhcp = None
    if data.get("dhcp"):
        d = data["dhcp"]
        dhcp = DhcpServerSpec(
            address=str(_required(d, "address", "dhcp")),
            subnet=str(_required(d, "subnet", "dhcp")),
            range_start=str(_required(d, "range_start", "dhcp")),
            range_end=str(_required(d, "range_end", "dhcp")),
            lease_time=str(d.get("lease_time", "12h")),
            interface=str(d.get("interface", "eth1")),
            gateway=str(d["gateway"]) if d.get("gateway") else None,
        )

    infra = None
    if data.get("infrastructure"):
        infra = _node({"role": "infrastructure", "host_index": 0, **data["infrastructure"]}, 0, "infrastructure")

    subnets = data.get("subnets", {})
    if not isinstance(subnets, dict):
        raise ProfileValidationError("profile.subnets must be a mapping of network -> CIDR")

    return NetworkProfile(
        name=str(_required(data, "name", "profile")),
        kind=_kind(str(_required(data, "kind", "profile"))),
        nodes=tuple(_node(n, i, "nodes") for i, n in enumerate(raw_nodes, start=1)),
        subnets=tuple((str(k), str(v)) for k, v in subnets.items()),
        bond=bond,
        infrastructure=infra,
        dhcp=dhcp,
        cluster_id=int(data.get("cluster_id", 1)),
        expect_failure=bool(data.get("expect_failure", False)),
        description=str(data.get("description", "")),
    )


def load_profile(path: Path) -> NetworkProfile:
    try:
        data = load_yaml(path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ProfileValidationError(f"Cannot read profile {path}: {exc}") from exc
    return profile_from_dict(data)
