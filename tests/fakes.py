"""Scripted in-memory cluster standing in for QEMU guests.

Each fake node understands the shell commands the harness sends (ip, bonding,
dnsmasq, k3s unit restarts, kubectl queries) closely enough to drive a whole
run on a fake clock.
"""

from __future__ import annotations

import ipaddress
import re
import threading
from dataclasses import dataclass, field
from typing import Any

import yaml

from clusterlab.adapters.base import CmdResult
from clusterlab.bootstrap.software import ALREADY_CONFIGURED
from clusterlab.core.config import HarnessSettings
from clusterlab.core.errors import CommandTimeoutError, ImageNotFoundError
from clusterlab.core.model import Role
from clusterlab.core.results import RunReport
from clusterlab.phases import boot, network
from clusterlab.phases.context import RunContext
from clusterlab.phases.engine import build_context, execute_run
from clusterlab.profiles.catalog import DEFAULT_ROSTER, Roster, build_profile
from clusterlab.profiles.scenarios import get_scenario
from clusterlab.topology.builder import NodeWiring, WiringPlan, build_wiring
from clusterlab.utils.shell import heredoc_body

VERSION = "v1.30.4+k3s1"
PLACEHOLDER_TOKEN = "K10placeholder::server:build-time-token"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.now += max(0.0, seconds)


@dataclass
class Link:
    up: bool = False
    base: str | None = None
    vlan: int | None = None
    master: str | None = None


@dataclass
class FakeNode:
    wiring: NodeWiring
    started_at: float
    boot_delay: float
    links: dict[str, Link] = field(default_factory=dict)
    addresses: dict[str, list[tuple[str, bool]]] = field(default_factory=dict)
    bond: dict[str, Any] | None = None
    files: dict[str, str] = field(default_factory=dict)
    units: dict[str, str] = field(default_factory=dict)
    k3s_config: dict[str, Any] | None = None
    token_file: str | None = PLACEHOLDER_TOKEN
    joined_at: float | None = None
    restarts: int = 0
    journal: list[str] = field(default_factory=list)
    hostname: str | None = None
    probes: int = 0
    running: bool = True

    @property
    def name(self) -> str:
        return self.wiring.name

    @property
    def role(self) -> Role:
        return self.wiring.node.role

    def all_addresses(self) -> list[str]:
        return [a for addrs in self.addresses.values() for a, _ in addrs]

    def server_active(self) -> bool:
        return self.units.get("k3s-server.service") == "active"

    def k3s_active(self) -> bool:
        return self.server_active() or self.units.get("k3s-agent.service") == "active"


class FakeChannel:
    def __init__(self, cluster: FakeCluster, node: str) -> None:
        self.cluster = cluster
        self.node = node
        self.closed = False

    def execute(self, command: str, timeout: float) -> CmdResult:
        return self.cluster.handle(self.node, command, timeout)

    def close(self) -> None:
        self.closed = True


class FakeCluster:
    """VmBackend whose guests are FakeNodes.

    Knobs:
      boot_delays       per-node seconds until the boot marker is active
      ready_delay       seconds from a unit (re)start until the node reports Ready
      missing_images    nodes whose image cannot be found
      reject_join       node -> journal text for a permanent join rejection
      flaky_join        node -> number of joins that fail with a transient error
      prewarm_failures  curl probes per node that time out before links warm up
      cleanup_fails     nodes whose stale state cannot be removed
      hang              node -> substring of a command that never answers
    """

    def __init__(
        self,
        clock: FakeClock,
        boot_delay: float = 5.0,
        boot_delays: dict[str, float] | None = None,
        ready_delay: float = 10.0,
        missing_images: tuple[str, ...] = (),
        reject_join: dict[str, str] | None = None,
        flaky_join: dict[str, int] | None = None,
        prewarm_failures: int = 1,
        cleanup_fails: tuple[str, ...] = (),
        hang: dict[str, str] | None = None,
    ) -> None:
        self.clock = clock
        self.boot_delay = boot_delay
        self.boot_delays = boot_delays or {}
        self.ready_delay = ready_delay
        self.missing_images = missing_images
        self.reject_join = reject_join or {}
        self.flaky_join = dict(flaky_join or {})
        self.prewarm_failures = prewarm_failures
        self.cleanup_fails = cleanup_fails
        self.hang = hang or {}
        self.plan: WiringPlan | None = None
        self.nodes: dict[str, FakeNode] = {}
        self.commands: list[tuple[float, str, str]] = []
        self.started: list[str] = []
        self.dhcp_ready_at_start: dict[str, bool] = {}
        self.reservations: dict[str, str] = {}
        self.dhcp_running = False
        self.stress_until = 0.0
        self.torn_down = False
        self._lock = threading.RLock()

    # VmBackend

    def prepare(self, plan: WiringPlan) -> None:
        self.plan = plan

    def start(self, wiring: NodeWiring) -> FakeChannel:
        if wiring.name in self.missing_images:
            raise ImageNotFoundError(wiring.name, "image missing.qcow2 does not exist")
        with self._lock:
            node = FakeNode(wiring, self.clock(), self.boot_delays.get(wiring.name, self.boot_delay))
            for nic in wiring.nics:
                node.links[nic.nic] = Link()
            node.links["lo"] = Link(up=True)
            node.units["k3s-server.service" if wiring.node.role.is_server else "k3s-agent.service"] = "active"
            self.nodes[wiring.name] = node
            self.started.append(wiring.name)
            self.dhcp_ready_at_start[wiring.name] = self.dhcp_running
        return FakeChannel(self, wiring.name)

    def stop(self, node: str) -> None:
        with self._lock:
            self.nodes[node].running = False
            if self.nodes[node].role == Role.INFRASTRUCTURE:
                self.dhcp_running = False

    def teardown(self) -> None:
        self.torn_down = True

    # helpers for tests

    def commands_for(self, node: str) -> list[str]:
        return [cmd for _, name, cmd in self.commands if name == node]

    def first_time(self, node: str, needle: str) -> float | None:
        return next((t for t, name, cmd in self.commands if name == node and needle in cmd), None)

    def lan_segment(self, node: FakeNode) -> tuple[str, int | None] | None:
        membership = node.wiring.membership("cluster")
        if membership is None:
            return None
        if node.bond is not None and membership.interface.startswith(node.bond["name"]):
            if node.bond["active"] is None:
                return None
        elif not self._link_up(node, membership.interface):
            return None
        # the VLAN actually configured on the link counts, not the one planned
        link = node.links.get(membership.interface)
        vlan = link.vlan if link is not None else membership.vlan
        return membership.switch, vlan

    def _link_up(self, node: FakeNode, name: str) -> bool:
        link = node.links.get(name)
        if link is None or not link.up:
            return False
        return link.base is None or self._link_up(node, link.base)

    def reachable(self, src: FakeNode, ip: str) -> FakeNode | None:
        for other in self.nodes.values():
            if not other.running or not any(a.split("/")[0] == ip for a in other.all_addresses()):
                continue
            mine, theirs = self.lan_segment(src), self.lan_segment(other)
            if mine is not None and mine == theirs:
                return other
        return None

    def primary_node(self) -> FakeNode | None:
        return next((n for n in self.nodes.values() if n.k3s_config and n.k3s_config.get("cluster-init")), None)

    def stressed(self) -> bool:
        return self.clock() < self.stress_until

    # command handling

    def handle(self, name: str, command: str, timeout: float) -> CmdResult:
        with self._lock:
            self.commands.append((self.clock(), name, command))
            node = self.nodes[name]
            needle = self.hang.get(name)
            if needle and needle in command:
                raise CommandTimeoutError(f"{name}: `{command}` exceeded {timeout:.0f}s", name, command)
            if self.clock() - node.started_at < node.boot_delay:
                if command.startswith("systemctl is-active --quiet"):
                    return CmdResult(3, "", "")
                raise CommandTimeoutError(f"{name}: console did not answer in time", name)
            return self._dispatch(node, command)

    def _dispatch(self, node: FakeNode, command: str) -> CmdResult:
        if "<<'CLUSTERLAB_EOF'" in command:
            return self._heredoc(node, command)
        if command.startswith("systemctl stop k3s-server.service"):
            return self._cleanup(node)
        if command.startswith("systemctl is-active --quiet "):
            return CmdResult(0, "", "")
        if command.startswith("hostnamectl set-hostname"):
            node.hostname = command.split()[2]
            return CmdResult(0, "", "")
        if command.startswith("modprobe"):
            return CmdResult(0, "", "")
        if "clusterlab-stress" in command:
            seconds = int(re.search(r"timeout (\d+) sh -c", command).group(1))
            self.stress_until = self.clock() + seconds
            return CmdResult(0, "clusterlab-stress", "")
        for pattern, handler in self._ROUTES:
            m = re.search(pattern, command)
            if m:
                return handler(self, node, *m.groups())
        return CmdResult(0, "", "")

    # ip

    def _bond_add(self, node: FakeNode, name: str, mode: str, miimon: str) -> CmdResult:
        if node.bond is None:
            node.bond = {"name": name, "mode": mode, "miimon": int(miimon), "primary": None, "members": [], "active": None}
            node.links[name] = Link()
        return CmdResult(0, "", "")

    def _enslave(self, node: FakeNode, member: str, bond: str) -> CmdResult:
        if node.bond is None or node.bond["name"] != bond:
            return CmdResult(1, "", f'Cannot find device "{bond}"')
        node.links[member].master = bond
        if member not in node.bond["members"]:
            node.bond["members"].append(member)
        return CmdResult(0, "", "")

    def _bond_primary(self, node: FakeNode, bond: str, primary: str) -> CmdResult:
        node.bond["primary"] = primary
        self._reselect(node)
        return CmdResult(0, "", "")

    def _reselect(self, node: FakeNode) -> None:
        bond = node.bond
        up = [m for m in bond["members"] if node.links[m].up]
        if bond["primary"] in up:
            bond["active"] = bond["primary"]
        elif bond["active"] not in up:
            bond["active"] = up[0] if up else None

    def _vlan_add(self, node: FakeNode, base: str, name: str, vlan: str) -> CmdResult:
        if base not in node.links:
            return CmdResult(1, "", f'Cannot find device "{base}"')
        node.links.setdefault(name, Link(base=base, vlan=int(vlan)))
        return CmdResult(0, "", "")

    def _link_set(self, node: FakeNode, name: str, state: str) -> CmdResult:
        if name not in node.links:
            return CmdResult(1, "", f'Cannot find device "{name}"')
        node.links[name].up = state == "up"
        if node.bond is not None and name in node.bond["members"]:
            self._reselect(node)
        return CmdResult(0, "", "")

    def _flush(self, node: FakeNode, name: str) -> CmdResult:
        node.addresses[name] = []
        return CmdResult(0, "", "")

    def _addr_add(self, node: FakeNode, address: str, name: str) -> CmdResult:
        if name not in node.links:
            return CmdResult(1, "", f'Cannot find device "{name}"')
        entries = node.addresses.setdefault(name, [])
        if any(a == address for a, _ in entries):
            return CmdResult(2, "", "RTNETLINK answers: File exists")
        entries.append((address, False))
        return CmdResult(0, "", "")

    def _lease(self, node: FakeNode, name: str) -> None:
        directive = node.wiring.address("cluster")
        if directive is None or not directive.dhcp or directive.interface != name:
            return
        if node.addresses.get(name) or not self.dhcp_running or not node.links[name].up:
            return
        mac = node.wiring.mac(name)
        ip = self.reservations.get(mac)
        if ip is None:
            return
        prefix = self.plan.profile.dhcp.subnet.split("/")[1]
        node.addresses[name] = [(f"{ip}/{prefix}", True)]

    def _ipv4_show(self, node: FakeNode, name: str) -> CmdResult:
        if name not in node.links:
            return CmdResult(1, "", f'Device "{name}" does not exist.')
        self._lease(node, name)
        lines = [f"3: {name}: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 state UP"]
        for address, dynamic in node.addresses.get(name, []):
            extra = " dynamic" if dynamic else ""
            lines.append(f"    inet {address} scope global{extra} {name}")
        return CmdResult(0, "\n".join(lines), "")

    def _routes(self, node: FakeNode) -> CmdResult:
        lines = []
        for name, entries in node.addresses.items():
            for address, _ in entries:
                iface = ipaddress.ip_interface(address)
                lines.append(f"{iface.network} dev {name} proto kernel scope link src {iface.ip}")
        return CmdResult(0, "\n".join(lines), "")

    def _brief(self, node: FakeNode) -> CmdResult:
        lines = []
        for name, link in node.links.items():
            label = f"{name}@{link.base}" if link.base else name
            addrs = " ".join(a for a, _ in node.addresses.get(name, []))
            lines.append(f"{label:<20} {'UP' if link.up else 'DOWN':<14} {addrs}".rstrip())
        return CmdResult(0, "\n".join(lines), "")

    def _details(self, node: FakeNode, name: str) -> CmdResult:
        link = node.links.get(name)
        if link is None:
            return CmdResult(1, "", f'Device "{name}" does not exist.')
        label = f"{name}@{link.base}" if link.base else name
        lines = [f"7: {label}: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500", "    link/ether 52:54:00:00:00:00"]
        if link.vlan is not None:
            lines.append(f"    vlan protocol 802.1Q id {link.vlan} <REORDER_HDR> addrgenmode eui64")
        return CmdResult(0, "\n".join(lines), "")

    def _bonding(self, node: FakeNode, name: str) -> CmdResult:
        bond = node.bond
        if bond is None or bond["name"] != name:
            return CmdResult(1, "", f"cat: /proc/net/bonding/{name}: No such file or directory")
        lines = [
            "Ethernet Channel Bonding Driver: v6.1.0",
            "",
            "Bonding Mode: fault-tolerance (active-backup)",
            f"Primary Slave: {bond['primary'] or 'None'} (primary_reselect always)",
            f"Currently Active Slave: {bond['active'] or 'None'}",
            f"MII Status: {'up' if bond['active'] else 'down'}",
            f"MII Polling Interval (ms): {bond['miimon']}",
        ]
        for member in bond["members"]:
            status = "up" if node.links[member].up else "down"
            lines += ["", f"Slave Interface: {member}", f"MII Status: {status}", "Link Failure Count: 0"]
        return CmdResult(0, "\n".join(lines), "")

    def _ping(self, node: FakeNode, ip: str) -> CmdResult:
        if self.reachable(node, ip):
            return CmdResult(0, "1 packets transmitted, 1 received, 0% packet loss", "")
        return CmdResult(1, "1 packets transmitted, 0 received, 100% packet loss", "")

    # dnsmasq

    def _heredoc(self, node: FakeNode, command: str) -> CmdResult:
        path = re.search(r"cat > (\S+) <<'CLUSTERLAB_EOF'", command).group(1)
        body = heredoc_body(command) or ""
        node.files[path] = body
        if path.endswith("config.yaml.clusterlab"):
            return self._k3s_install(node, yaml.safe_load(body), command)
        if path.startswith("/etc/dnsmasq.d/"):
            for line in body.splitlines():
                if line.startswith("dhcp-host="):
                    mac, ip, _ = line.split("=", 1)[1].split(",")
                    self.reservations[mac] = ip
        return CmdResult(0, "", "")

    def _restart(self, node: FakeNode, unit: str) -> CmdResult:
        if unit == "dnsmasq.service":
            if not any(p.startswith("/etc/dnsmasq.d/") for p in node.files):
                return CmdResult(1, "", "dnsmasq: no configuration")
            node.units[unit] = "active"
            self.dhcp_running = True
        return CmdResult(0, "", "")

    def _udp_listen(self, node: FakeNode) -> CmdResult:
        ok = node.units.get("dnsmasq.service") == "active" and node.running
        return CmdResult(0 if ok else 1, "", "")

    def _leases(self, node: FakeNode) -> CmdResult:
        lines = [f"0 {mac} {ip} * *" for mac, ip in self.reservations.items()]
        return CmdResult(0, "\n".join(lines), "")

    # k3s

    def _cleanup(self, node: FakeNode) -> CmdResult:
        if node.name in self.cleanup_fails:
            return CmdResult(1, "", "rm: cannot remove '/var/lib/rancher/k3s/server/db': Device or resource busy")
        node.units["k3s-server.service"] = "inactive"
        node.units["k3s-agent.service"] = "inactive"
        node.token_file = None
        node.k3s_config = None
        node.joined_at = None
        return CmdResult(0, "", "")

    def _k3s_install(self, node: FakeNode, cfg: dict[str, Any], command: str) -> CmdResult:
        unit = "k3s-server.service" if node.role.is_server else "k3s-agent.service"
        if cfg == node.k3s_config and node.units.get(unit) == "active":
            return CmdResult(0, ALREADY_CONFIGURED, "")
        node.restarts += 1
        if cfg.get("cluster-init"):
            node.k3s_config = cfg
            node.units[unit] = "active"
            node.token_file = f"K10{'ab' * 16}::server:{cfg['token']}"
            node.joined_at = self.clock()
            node.journal.append("Running kube-apiserver")
            return CmdResult(0, "", "")

        failure = self._join_failure(node, cfg)
        if failure:
            node.units[unit] = "failed"
            node.journal.append(failure)
            detail = f"Job for {unit} failed because the control process exited with error code."
            return CmdResult(1, "", detail)
        node.k3s_config = cfg
        node.units[unit] = "active"
        node.joined_at = self.clock()
        node.journal.append("Successfully joined the cluster")
        return CmdResult(0, "", "")

    def _join_failure(self, node: FakeNode, cfg: dict[str, Any]) -> str | None:
        if node.name in self.reject_join:
            return self.reject_join[node.name]
        if self.flaky_join.get(node.name, 0) > 0:
            self.flaky_join[node.name] -= 1
            return "level=error msg=\"etcdserver: leader changed\""
        ip = re.match(r"https://([^:]+):", cfg.get("server", "")).group(1)
        target = self.reachable(node, ip)
        if target is None or not target.server_active():
            return (
                f'level=fatal msg="failed to get CA certs: Get \\"https://{ip}:6443/cacerts\\": '
                f'dial tcp {ip}:6443: connect: no route to host"'
            )
        primary = self.primary_node()
        if primary is None or primary.k3s_config.get("token") != cfg.get("token"):
            return 'level=fatal msg="token CA hash does not match the Cluster CA certificate hash"'
        return None

    def _journal(self, node: FakeNode, unit: str) -> CmdResult:
        return CmdResult(0, "\n".join(node.journal[-50:]), "")

    def _read_token(self, node: FakeNode) -> CmdResult:
        if node.token_file is None:
            return CmdResult(1, "", "cat: /var/lib/rancher/k3s/server/token: No such file or directory")
        return CmdResult(0, node.token_file, "")

    def _api_unavailable(self, node: FakeNode) -> CmdResult | None:
        if not node.server_active() or node.k3s_config is None:
            return CmdResult(1, "", "The connection to the server 127.0.0.1:6443 was refused")
        if self.stressed():
            return CmdResult(1, "", "Error from server: etcdserver: request timed out")
        if self.clock() - node.joined_at < self.ready_delay / 2:
            return CmdResult(1, "", "Error from server (ServiceUnavailable): apiserver not ready")
        return None

    def _port(self, node: FakeNode) -> CmdResult:
        return CmdResult(0 if node.server_active() and node.k3s_config else 1, "", "")

    def _readyz(self, node: FakeNode) -> CmdResult:
        return self._api_unavailable(node) or CmdResult(0, "ok", "")

    def _nodes(self, node: FakeNode) -> CmdResult:
        down = self._api_unavailable(node)
        if down:
            return down
        rows = []
        for other in self.nodes.values():
            if other.k3s_config is None or not other.k3s_active() or other.joined_at is None:
                continue
            ready = self.clock() - other.joined_at >= self.ready_delay
            if other.bond is not None and other.bond["active"] is None:
                ready = False
            roles = "control-plane,etcd,master" if other.role.is_server else "<none>"
            rows.append(f"{other.name:<12} {'Ready' if ready else 'NotReady':<9} {roles:<26} 5m   {VERSION}")
        return CmdResult(0, "\n".join(rows), "")

    def _curl(self, node: FakeNode, ip: str) -> CmdResult:
        node.probes += 1
        if node.probes <= self.prewarm_failures:
            return CmdResult(124, "", "")
        target = self.reachable(node, ip)
        if target is None or not target.server_active():
            return CmdResult(7, "", "curl: (7) Failed to connect")
        return CmdResult(0, "-----BEGIN CERTIFICATE-----\nMIIB...\n-----END CERTIFICATE-----", "")

    _ROUTES = [
        (r"ip link add (\S+) type bond mode (\S+) miimon (\d+)", _bond_add),
        (r"^ip link set (\S+) master (\S+)$", _enslave),
        (r"^ip link set (\S+) type bond primary (\S+)$", _bond_primary),
        (r"ip link add link (\S+) name (\S+) type vlan id (\d+)", _vlan_add),
        (r"^ip link set (\S+) (up|down)$", _link_set),
        (r"^ip addr flush dev (\S+)$", _flush),
        (r"^ip addr add (\S+) dev (\S+)$", _addr_add),
        (r"^ip -4 addr show dev (\S+)$", _ipv4_show),
        (r"^ip route show$", _routes),
        (r"^ip -br addr show$", _brief),
        (r"^ip -d link show (\S+)$", _details),
        (r"^cat /proc/net/bonding/(\S+)$", _bonding),
        (r"^ping -c 1 -W \d+ (\S+)$", _ping),
        (r"^systemctl restart (\S+)$", _restart),
        (r"^ss -ulnp \| grep -q ':67 '$", _udp_listen),
        (r"^cat /var/lib/misc/dnsmasq.leases$", _leases),
        (r"^journalctl -u (\S+) -n \d+ --no-pager$", _journal),
        (r"^cat /var/lib/rancher/k3s/server/token$", _read_token),
        (r"^ss -tlnp \| grep -q ':6443 '$", _port),
        (r"get --raw /readyz$", _readyz),
        (r"get nodes --no-headers$", _nodes),
        (r"^timeout \d+ curl -sk https://([^:]+):6443/cacerts$", _curl),
    ]


class ScriptedChannel:
    """Channel that answers from a list; the last entry repeats forever."""

    def __init__(self, node: str, responses: list[CmdResult | BaseException]) -> None:
        self.node = node
        self.responses = list(responses)
        self.commands: list[str] = []

    def execute(self, command: str, timeout: float) -> CmdResult:
        self.commands.append(command)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        pass


def prepared_context(
    profile: str = "simple",
    roster: Roster = DEFAULT_ROSTER,
    settings: HarnessSettings | None = None,
    **knobs: Any,
) -> tuple[RunContext, FakeCluster, FakeClock]:
    """A booted cluster with its networks configured, ready for bootstrap."""
    clock = FakeClock()
    cluster = FakeCluster(clock, **knobs)
    plan = build_wiring(build_profile(profile, roster))
    report = RunReport(run="test", profile=profile)
    ctx = build_context(plan, settings or HarnessSettings(), cluster, report, clock=clock, sleep=clock.sleep)
    boot.run(ctx)
    network.run(ctx)
    return ctx, cluster, clock


def run_scenario(name: str, settings: HarnessSettings | None = None, **knobs: Any) -> tuple[RunReport, FakeCluster]:
    scenario = get_scenario(name)
    clock = FakeClock()
    cluster = FakeCluster(clock, **knobs)
    plan = build_wiring(scenario.build())
    report = execute_run(
        plan,
        settings or HarnessSettings(),
        cluster,
        scenario.faults,
        run_id=name,
        clock=clock,
        sleep=clock.sleep,
    )
    return report, cluster
