from __future__ import annotations

import re
from typing import Any

from clusterlab.core.config import SoftwareSettings
from clusterlab.core.model import Role
from clusterlab.topology.builder import WiringPlan
from clusterlab.utils.shell import write_file
from clusterlab.utils.yaml import dump_yaml

ALREADY_CONFIGURED = "clusterlab: already configured"

# Join failures worth another attempt; everything else is a protocol error.
_TRANSIENT_JOIN = [
    r"connection refused",
    r"no route to host",
    r"i/o timeout",
    r"context deadline exceeded",
    r"timed out",
    r"etcdserver: leader changed",
    r"etcdserver: request timed out",
    r"etcdserver: too many learner members",
    r"service unavailable",
    r"failed to get ca certs",
    r"waiting for .* to be ready",
]


def unit_for(role: Role, software: SoftwareSettings) -> str:
    return software.server_unit if role.is_server else software.agent_unit


def server_url(ip: str, software: SoftwareSettings) -> str:
    return f"https://{ip}:{software.api_port}"


def node_config(
    plan: WiringPlan,
    node: str,
    token: str,
    software: SoftwareSettings,
    server: str | None = None,
) -> dict[str, Any]:
    """Cluster-software configuration for one node, derived from the wiring plan."""
    wiring = plan.node(node)
    role = wiring.node.role
    cluster = wiring.membership("cluster")
    ip = plan.expected_ip(node)
    cfg: dict[str, Any] = {
        "node-name": node,
        "node-ip": ip,
        "flannel-iface": cluster.interface if cluster else "eth1",
        "token": token,
    }
    if role.is_server:
        primary_ip = plan.expected_ip(plan.profile.primary.name)
        cfg.update(
            {
                "advertise-address": ip,
                "tls-san": [primary_ip] if primary_ip == ip else [primary_ip, ip],
                "cluster-cidr": software.cluster_cidr,
                "service-cidr": software.service_cidr,
                "write-kubeconfig-mode": "0644",
                "disable": list(software.disable),
            }
        )
    if role == Role.PRIMARY:
        cfg["cluster-init"] = True
    elif server:
        cfg["server"] = server
    return cfg


def install_config_command(cfg: dict[str, Any], unit: str, software: SoftwareSettings) -> str:
    """Stage the config and restart the unit only when something changed.

    Re-issuing the same command against a node that already runs with this
    configuration prints ALREADY_CONFIGURED and touches nothing.
    """
    staged = f"{software.config_path}.clusterlab"
    return "\n".join(
        [
            write_file(staged, dump_yaml(cfg), mode="0600"),
            f"if cmp -s {staged} {software.config_path} && systemctl is-active --quiet {unit}; then",
            f"  rm -f {staged}; echo '{ALREADY_CONFIGURED}'",
            "else",
            f"  mv -f {staged} {software.config_path} && systemctl restart {unit}",
            "fi",
        ]
    )


def cleanup_command(software: SoftwareSettings) -> str:
    data = software.data_dir
    stale = " ".join(f"{data}/server/{d}" for d in ("db", "tls", "token", "cred"))
    return "; ".join(
        [
            f"systemctl stop {software.server_unit} {software.agent_unit} 2>/dev/null || true",
            f"systemctl reset-failed {software.server_unit} {software.agent_unit} 2>/dev/null || true",
            f"rm -rf {stale} {data}/agent/client-kubelet.* {software.config_path}",
            f"test ! -e {data}/server/token",
        ]
    )


def token_file(software: SoftwareSettings) -> str:
    return f"{software.data_dir}/server/token"


def read_token_command(software: SoftwareSettings) -> str:
    return f"cat {token_file(software)}"


def token_matches(file_content: str, token: str) -> bool:
    """The server writes K10<ca-hash>::server:<token> for a passphrase token."""
    value = file_content.strip()
    return value == token or value.endswith(f"::server:{token}")


def api_port_command(software: SoftwareSettings) -> str:
    return f"ss -tlnp | grep -q ':{software.api_port} '"


def readyz_command(software: SoftwareSettings) -> str:
    return f"{software.kubectl} get --raw /readyz"


def nodes_command(software: SoftwareSettings) -> str:
    return f"{software.kubectl} get nodes --no-headers"


def prewarm_command(ip: str, software: SoftwareSettings, timeout: float) -> str:
    return f"timeout {int(timeout)} curl -sk {server_url(ip, software)}/cacerts"


def journal_command(unit: str, lines: int = 50) -> str:
    return f"journalctl -u {unit} -n {lines} --no-pager"


def is_transient_join_failure(text: str) -> bool:
    lowered = text.lower()
    return any(re.search(pattern, lowered) for pattern in _TRANSIENT_JOIN)
