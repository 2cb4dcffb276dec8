from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PhaseStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIPPED = "SKIPPED"


class Role(str, Enum):
    PRIMARY = "cluster-primary"
    SECONDARY = "cluster-secondary"
    AGENT = "cluster-agent"
    INFRASTRUCTURE = "infrastructure"

    @property
    def is_server(self) -> bool:
        return self in (Role.PRIMARY, Role.SECONDARY)


class TopologyKind(str, Enum):
    FLAT = "flat"
    VLAN = "vlan-tagged"
    BONDED_VLAN = "bonded-vlan"
    DHCP = "dhcp-assigned"


class ClusterState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    PRIMARY_INIT = "PRIMARY_INIT"
    PRIMARY_READY = "PRIMARY_READY"
    SECONDARY_JOINING = "SECONDARY_JOINING"
    SECONDARY_READY = "SECONDARY_READY"
    AGENTS_JOINING = "AGENTS_JOINING"
    CLUSTER_READY = "CLUSTER_READY"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (ClusterState.CLUSTER_READY, ClusterState.FAILED)


@dataclass(frozen=True, slots=True)
class PhaseResult:
    phase: str
    node: str
    status: PhaseStatus
    message: str
    started_at: str
    duration_s: float = 0.0
    command: str | None = None
    evidence: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "node": self.node,
            "status": self.status.value,
            "message": self.message,
            "started_at": self.started_at,
            "duration_s": round(self.duration_s, 3),
            "command": self.command,
            "evidence": self.evidence,
        }


@dataclass(frozen=True, slots=True)
class FatalError:
    phase: str
    node: str
    command: str | None
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "node": self.node,
            "command": self.command,
            "kind": self.kind,
            "message": self.message,
        }
