from __future__ import annotations

import re
from typing import Any

from clusterlab.resilience.execution import Mode, NodeExecutor
from clusterlab.topology import netconfig

_VLAN_RX = re.compile(r"vlan protocol 802\.1Q id (\d+)")
_INET_RX = re.compile(r"inet (\d+\.\d+\.\d+\.\d+/\d+)(.*)")


def parse_ip_brief(text: str) -> dict[str, dict[str, Any]]:
    """Parse ``ip -br addr show`` into {interface: {state, addresses}}."""
    out: dict[str, dict[str, Any]] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        name = parts[0].split("@", 1)[0]
        out[name] = {"state": parts[1], "addresses": [p for p in parts[2:] if "." in p and "/" in p]}
    return out


def interface_holding(brief: dict[str, dict[str, Any]], address: str) -> list[str]:
    return [name for name, info in brief.items() if address in info["addresses"]]


def parse_vlan_id(text: str) -> int | None:
    m = _VLAN_RX.search(text)
    return int(m.group(1)) if m else None


def parse_ipv4(text: str) -> list[dict[str, Any]]:
    out = []
    for line in text.splitlines():
        m = _INET_RX.search(line.strip())
        if m:
            out.append({"address": m.group(1), "dynamic": "dynamic" in m.group(2)})
    return out


def parse_bonding(text: str) -> dict[str, Any]:
    """Parse /proc/net/bonding/<bond>."""
    state: dict[str, Any] = {"mode": None, "primary": None, "active": None, "mii": None, "slaves": {}}
    current: str | None = None
    for raw in text.splitlines():
        line = raw.strip()
        if ":" not in line:
            continue
        key, value = (x.strip() for x in line.split(":", 1))
        if key == "Bonding Mode":
            state["mode"] = value
        elif key == "Primary Slave":
            state["primary"] = value.split()[0] if value and value != "None" else None
        elif key == "Currently Active Slave":
            state["active"] = None if value == "None" else value
        elif key == "Slave Interface":
            current = value
            state["slaves"][current] = None
        elif key == "MII Status":
            if current is None:
                state["mii"] = value
            else:
                state["slaves"][current] = value
    return state


def is_active_backup(bond: dict[str, Any]) -> bool:
    return "active-backup" in (bond.get("mode") or "")


def routes_contain(text: str, subnet: str) -> bool:
    return any(line.split()[:1] == [subnet] for line in text.splitlines() if line.strip())


def brief(executor: NodeExecutor, node: str) -> dict:
    r = executor.run(node, netconfig.brief_addresses_command(), Mode.BEST_EFFORT)
    return {"rc": r.rc, "interfaces": parse_ip_brief(r.stdout) if r.ok else {}, "err": r.stderr}


def vlan_id(executor: NodeExecutor, node: str, interface: str) -> dict:
    r = executor.run(node, netconfig.link_details_command(interface), Mode.BEST_EFFORT)
    return {"rc": r.rc, "vlan": parse_vlan_id(r.stdout), "err": r.stderr}


def bond_state(executor: NodeExecutor, node: str, bond: str, mode: Mode = Mode.BEST_EFFORT) -> dict:
    r = executor.run(node, netconfig.bond_state_command(bond), mode)
    return {"rc": r.rc, "bond": parse_bonding(r.stdout), "err": r.stderr}


def lease(executor: NodeExecutor, node: str, interface: str) -> dict:
    addrs = executor.run(node, netconfig.ipv4_addresses_command(interface), Mode.BEST_EFFORT)
    routes = executor.run(node, netconfig.routes_command(), Mode.BEST_EFFORT)
    return {"rc": addrs.rc, "addresses": parse_ipv4(addrs.stdout), "routes": routes.stdout}


def ping(executor: NodeExecutor, node: str, target: str) -> dict:
    r = executor.run(node, netconfig.ping_command(target), Mode.BEST_EFFORT)
    return {"rc": r.rc, "out": r.stdout, "err": r.stderr}
