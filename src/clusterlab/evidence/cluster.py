from __future__ import annotations

from clusterlab.adapters.base import CmdResult
from clusterlab.bootstrap import software
from clusterlab.core.config import SoftwareSettings
from clusterlab.resilience.execution import Mode, NodeExecutor


def parse_nodes(text: str) -> dict[str, str]:
    """Parse ``kubectl get nodes --no-headers`` into {name: status}."""
    out: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2:
            out[parts[0]] = parts[1]
    return out


def is_ready(status: str | None) -> bool:
    return bool(status) and status.split(",")[0] == "Ready"


def ready_nodes(text: str) -> list[str]:
    return sorted(name for name, status in parse_nodes(text).items() if is_ready(status))


def node_statuses(executor: NodeExecutor, server: str, sw: SoftwareSettings, mode: Mode) -> tuple[CmdResult, dict[str, str]]:
    r = executor.run(server, software.nodes_command(sw), mode)
    return r, parse_nodes(r.stdout) if r.ok else {}


def api_ready(executor: NodeExecutor, server: str, sw: SoftwareSettings, mode: Mode) -> bool:
    r = executor.run(server, software.readyz_command(sw), mode)
    return r.ok and r.stdout.strip() == "ok"
