from __future__ import annotations

from dataclasses import dataclass

from clusterlab.core.errors import ProfileValidationError

from .catalog import DEFAULT_ROSTER, HA_AGENT_ROSTER, Roster, build_profile
from .schema import NetworkProfile


@dataclass(frozen=True, slots=True)
class Scenario:
    name: str
    profile: str
    roster: Roster = DEFAULT_ROSTER
    faults: tuple[str, ...] = ()
    description: str = ""

    def build(self, cluster_id: int = 1, images: dict[str, str] | None = None) -> NetworkProfile:
        return build_profile(self.profile, self.roster, cluster_id, images)


SCENARIOS: dict[str, Scenario] = {
    s.name: s
    for s in (
        Scenario("flat", "simple", description="primary + secondary, static addresses on one flat network"),
        Scenario("vlan", "vlans", description="cluster traffic on VLAN 200 over a shared link"),
        Scenario(
            "bonded-vlan",
            "bonding-vlans",
            faults=("bond-member-down",),
            description="active-backup bond under VLAN 200, active member failed after formation",
        ),
        Scenario("dhcp", "dhcp-simple", description="reserved addresses served by a dnsmasq node"),
        Scenario(
            "quorum-stress",
            "simple",
            faults=("cpu-contention",),
            description="CPU contention on the primary during the post-join settling window",
        ),
        Scenario("ha-agent", "simple", roster=HA_AGENT_ROSTER, description="two servers and one agent"),
        Scenario("vlan-negative", "vlans-broken", description="mismatched VLAN ids, formation must fail"),
    )
}


def get_scenario(name: str) -> Scenario:
    if name not in SCENARIOS:
        raise ProfileValidationError(f"Unknown scenario {name!r}; known: {', '.join(sorted(SCENARIOS))}")
    return SCENARIOS[name]
