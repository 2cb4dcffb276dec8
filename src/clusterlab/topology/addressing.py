from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import IntEnum

# QEMU's locally administered OUI.
MAC_PREFIX = "52:54:00"
INFRA_HOST_INDEX = 0


class NicRole(IntEnum):
    CLUSTER = 0x01
    STORAGE = 0x02
    BOND_BACKUP = 0x03


@dataclass(frozen=True, slots=True)
class Reservation:
    node: str
    mac: str
    ip: str

    def dnsmasq_line(self) -> str:
        return f"dhcp-host={self.mac},{self.ip},{self.node}"


def _octet(value: int, what: str) -> str:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{what} {value} does not fit in one MAC octet")
    return f"{value:02x}"


def mac_address(cluster_id: int, role: NicRole | int, host_index: int) -> str:
    """52:54:00:CC:NN:HH for cluster CC, NIC role NN and host HH."""
    return ":".join(
        [
            MAC_PREFIX,
            _octet(cluster_id, "cluster id"),
            _octet(int(role), "network role"),
            _octet(host_index, "host index"),
        ]
    )


def host_address(subnet: str, host_index: int) -> str:
    """Address ``host_index`` inside ``subnet`` as CIDR, e.g. 192.168.1.2/24."""
    net = ipaddress.ip_network(subnet, strict=True)
    if host_index <= 0 or host_index >= net.num_addresses - 1:
        raise ValueError(f"host index {host_index} is outside {subnet}")
    return f"{net.network_address + host_index}/{net.prefixlen}"


def in_subnet(address: str, subnet: str) -> bool:
    ip = ipaddress.ip_interface(address).ip
    return ip in ipaddress.ip_network(subnet, strict=True)


def render_dnsmasq_config(
    reservations: list[Reservation],
    interface: str,
    listen_address: str,
    range_start: str,
    range_end: str,
    lease_time: str,
    gateway: str | None = None,
) -> str:
    lines = [
        "# generated by clusterlab",
        f"interface={interface}",
        "bind-interfaces",
        f"listen-address={listen_address}",
        "dhcp-authoritative",
        "log-dhcp",
        f"dhcp-range={range_start},{range_end},{lease_time}",
    ]
    if gateway:
        lines.append(f"dhcp-option=3,{gateway}")
    else:
        # no default route on the test network
        lines.append("dhcp-option=3")
    lines.extend(r.dnsmasq_line() for r in reservations)
    return "\n".join(lines) + "\n"
