from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from clusterlab.adapters.base import CmdResult
from clusterlab.core.config import HarnessSettings
from clusterlab.core.errors import (
    ClusterlabError,
    CommandFailedError,
    CommandTimeoutError,
    ProtocolError,
    TransientCommandError,
)
from clusterlab.core.logging import get_logger
from clusterlab.core.model import ClusterState, Role, TopologyKind
from clusterlab.core.results import RunReport
from clusterlab.evidence.cluster import api_ready, is_ready, node_statuses
from clusterlab.phases.base import PhaseTimer, fatal_from, make_result
from clusterlab.resilience.cleanup import cleanup_stale_state
from clusterlab.resilience.execution import Mode, NodeExecutor, wait_until
from clusterlab.resilience.prewarm import prewarm
from clusterlab.resilience.retry import RetryPolicy
from clusterlab.resilience.settling import SettlingWindow
from clusterlab.topology.builder import WiringPlan

from . import software
from .states import BootstrapStateMachine
from .token import ClusterToken

log = get_logger(__name__)

PRIMARY_PHASE = "bootstrap-primary"
SECONDARY_PHASE = "bootstrap-secondary"
AGENT_PHASE = "bootstrap-agents"
HEALTH_PHASE = "health"

_WARMUP_KINDS = {TopologyKind.VLAN, TopologyKind.BONDED_VLAN}


class BootstrapCoordinator:
    """Drives UNINITIALIZED -> CLUSTER_READY over node command channels.

    Steps are sequential across states and parallel within one. Errors on the
    primary propagate to the caller and end the run; errors on any other node
    end only that node's branch.
    """

    def __init__(
        self,
        plan: WiringPlan,
        settings: HarnessSettings,
        executor: NodeExecutor,
        report: RunReport,
        machine: BootstrapStateMachine | None = None,
        token: ClusterToken | None = None,
        failed: set[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_settling: Callable[[], None] | None = None,
    ) -> None:
        self.plan = plan
        self.settings = settings
        self.sw = settings.software
        self.executor = executor
        self.report = report
        self.machine = machine or BootstrapStateMachine()
        self.token = token or ClusterToken()
        self.failed = failed if failed is not None else set()
        self.clock = clock
        self.sleep = sleep
        self.on_settling = on_settling
        self.retry = RetryPolicy.from_settings(settings)
        self.joined: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def primary(self) -> str:
        return self.plan.profile.primary.name

    @property
    def state(self) -> ClusterState:
        return self.machine.state

    def _alive(self, role: Role) -> list[str]:
        return [n.name for n in self.plan.profile.by_role(role) if n.name not in self.failed]

    def fail_node(self, phase: str, node: str, exc: BaseException, timer: PhaseTimer) -> None:
        log.error("%s: %s failed: %s", node, phase, exc)
        with self._lock:
            self.failed.add(node)
        fatal = fatal_from(phase, node, exc)
        self.report.add_error(fatal)
        self.report.add(make_result(phase, node, False, str(exc), timer, command=fatal.command))

    def _wait(self, check: Callable[[], bool], timeout: float) -> bool:
        return wait_until(check, timeout, self.settings.poll_interval, self.clock, self.sleep)

    # command issue

    def issue(self, node: str, command: str, unit: str) -> CmdResult:
        """Run an install/restart command, classifying failures from the unit journal."""
        try:
            return self.executor.run(node, command, Mode.ABORT)
        except CommandFailedError as exc:
            journal = self.executor.run(node, software.journal_command(unit), Mode.BEST_EFFORT)
            text = "\n".join(x for x in (exc.stderr, exc.stdout, journal.stdout) if x).strip()
            if software.is_transient_join_failure(text):
                last = text.splitlines()[-1] if text else f"exit {exc.rc}"
                raise TransientCommandError(f"{node}: {unit} not up yet: {last}", node, command) from exc
            raise ProtocolError(f"{node}: {unit} rejected the join: {text or f'exit {exc.rc}'}", node, command) from exc

    def issue_join(self, node: str, server: str | None) -> CmdResult:
        role = self.plan.node(node).node.role
        unit = software.unit_for(role, self.sw)
        cfg = software.node_config(self.plan, node, self.token.value, self.sw, server=server)
        command = software.install_config_command(cfg, unit, self.sw)
        return self.retry.call(f"{node}: configure {unit}", lambda: self.issue(node, command, unit), sleep=self.sleep)

    # PRIMARY_INIT / PRIMARY_READY

    def bootstrap_primary(self) -> None:
        primary = self.primary
        timer = PhaseTimer(self.clock)
        self.machine.advance(ClusterState.PRIMARY_INIT)
        cleanup = cleanup_stale_state(self.executor, primary, self.sw)
        self.token.generate()
        result = self.issue_join(primary, None)
        self.report.add(
            make_result(
                PRIMARY_PHASE,
                primary,
                True,
                "cluster-init issued",
                timer,
                command=cleanup,
                evidence={"token": self.token.fingerprint(), "output": result.stdout[-500:]},
            )
        )

        timer = PhaseTimer(self.clock)
        self._await_primary(primary)
        content = self.executor.run(primary, software.read_token_command(self.sw), Mode.ABORT).stdout
        if not software.token_matches(content, self.token.value):
            raise ProtocolError(
                f"{primary}: token file does not carry the issued cluster token",
                primary,
                software.read_token_command(self.sw),
            )
        self.joined[primary] = primary
        self.machine.advance(ClusterState.PRIMARY_READY)
        self.report.add(
            make_result(
                PRIMARY_PHASE,
                primary,
                True,
                "control plane healthy",
                timer,
                evidence={"token": self.token.fingerprint(), "server": self.server_url(primary)},
            )
        )

    def _await_primary(self, primary: str) -> None:
        timeout = self.settings.primary_ready_timeout
        checks = [
            ("api port", lambda: self.executor.run(primary, software.api_port_command(self.sw), Mode.BEST_EFFORT).ok),
            ("readyz", lambda: api_ready(self.executor, primary, self.sw, Mode.BEST_EFFORT)),
            ("node Ready", lambda: self._ready_on(primary, [primary], Mode.BEST_EFFORT)),
        ]
        deadline = self.clock() + timeout
        for what, check in checks:
            if not self._wait(check, max(0.0, deadline - self.clock())):
                raise CommandTimeoutError(f"{primary}: {what} not reached within {timeout:.0f}s", primary)
            log.info("%s: %s", primary, what)

    def _ready_on(self, server: str, nodes: list[str], mode: Mode) -> bool:
        _, statuses = node_statuses(self.executor, server, self.sw, mode)
        return all(is_ready(statuses.get(n)) for n in nodes)

    def server_url(self, node: str) -> str:
        return software.server_url(self.plan.expected_ip(node), self.sw)

    # joins

    def _join(self, phase: str, node: str, server: str) -> bool:
        timer = PhaseTimer(self.clock)
        try:
            cleanup_stale_state(self.executor, node, self.sw)
            probes = 0
            if self.plan.profile.kind in _WARMUP_KINDS and self.settings.prewarm_attempts > 0:
                probes = prewarm(
                    self.executor,
                    node,
                    software.prewarm_command(self.plan.expected_ip(server), self.sw, self.settings.prewarm_timeout),
                    self.settings.prewarm_attempts,
                    self.settings.prewarm_timeout,
                    self.settings.prewarm_backoff,
                    self.sleep,
                )
            result = self.issue_join(node, self.server_url(server))
        except ClusterlabError as exc:
            self.fail_node(phase, node, exc, timer)
            return False
        with self._lock:
            self.joined[node] = server
        self.report.add(
            make_result(
                phase,
                node,
                True,
                f"join issued against {server}",
                timer,
                evidence={
                    "server": self.server_url(server),
                    "token": self.token.fingerprint(),
                    "prewarm_probes": probes,
                    "already_configured": software.ALREADY_CONFIGURED in result.stdout,
                },
            )
        )
        return True

    def _join_all(self, phase: str, assignments: list[tuple[str, str]]) -> list[str]:
        if not assignments:
            return []
        with ThreadPoolExecutor(max_workers=len(assignments), thread_name_prefix="join") as pool:
            futures = {node: pool.submit(self._join, phase, node, server) for node, server in assignments}
            return [node for node, future in futures.items() if future.result()]

    def join_secondaries(self) -> None:
        self.machine.advance(ClusterState.SECONDARY_JOINING)
        joined = self._join_all(SECONDARY_PHASE, [(n, self.primary) for n in self._alive(Role.SECONDARY)])
        if joined:
            self._verify_quorum(joined)
        self.machine.advance(ClusterState.SECONDARY_READY)

    def _verify_quorum(self, joined: list[str]) -> None:
        """Quorum re-check after secondaries join.

        Checks issued while the settling window is open are best-effort and only
        logged; once it has elapsed, API failures abort and every secondary must
        reach Ready within the join timeout.
        """
        window = SettlingWindow(self.settings.settling_window, self.clock)
        window.open()
        timer = PhaseTimer(self.clock)
        if self.on_settling is not None:
            self.on_settling()
        while window.active:
            # a check that outlives the window still finishes best-effort
            if api_ready(self.executor, self.primary, self.sw, Mode.BEST_EFFORT) and self._ready_on(
                self.primary, joined, Mode.BEST_EFFORT
            ):
                log.debug("cluster answers inside the settling window (%.0fs left)", window.remaining())
            else:
                log.debug("cluster not answering inside the settling window (%.0fs left)", window.remaining())
            self.sleep(min(self.settings.poll_interval, window.remaining()))
        mode = window.mode()

        def _quorum() -> bool:
            if not api_ready(self.executor, self.primary, self.sw, mode):
                raise CommandFailedError(self.primary, software.readyz_command(self.sw), 1, "", "readyz not ok")
            return True

        self.retry.call(
            "quorum re-check",
            _quorum,
            retry_on=(TransientCommandError, CommandFailedError),
            sleep=self.sleep,
        )
        self._await_members(SECONDARY_PHASE, joined, timer, Mode.ABORT)

    def _await_members(self, phase: str, nodes: list[str], timer: PhaseTimer, mode: Mode) -> None:
        statuses: dict[str, str] = {}

        def _poll() -> bool:
            result, current = self.retry.call(
                f"{self.primary}: list nodes",
                lambda: node_statuses(self.executor, self.primary, self.sw, mode),
                retry_on=(TransientCommandError, CommandFailedError),
                sleep=self.sleep,
            )
            statuses.update(current)
            return all(is_ready(statuses.get(n)) for n in nodes)

        self._wait(_poll, self.settings.join_ready_timeout)
        for node in nodes:
            status = statuses.get(node)
            if is_ready(status):
                self.report.add(make_result(phase, node, True, "node Ready", timer, evidence={"status": status}))
                continue
            exc = CommandTimeoutError(
                f"{node}: not Ready within {self.settings.join_ready_timeout:.0f}s (status {status or 'absent'})",
                node,
                software.nodes_command(self.sw),
            )
            self.fail_node(phase, node, exc, timer)

    def join_agents(self) -> None:
        self.machine.advance(ClusterState.AGENTS_JOINING)
        servers = [self.primary] + [n for n in self._alive(Role.SECONDARY) if n in self.joined]
        agents = self._alive(Role.AGENT)
        assignments = [(agent, servers[i % len(servers)]) for i, agent in enumerate(agents)]
        joined = self._join_all(AGENT_PHASE, assignments)
        if joined:
            self._await_members(AGENT_PHASE, joined, PhaseTimer(self.clock), Mode.BEST_EFFORT)

    # CLUSTER_READY

    def verify_cluster(self) -> ClusterState:
        expected = [w.name for w in self.plan.cluster_nodes() if w.name not in self.failed]
        servers = [n for n in expected if self.plan.node(n).node.role.is_server]
        timer = PhaseTimer(self.clock)

        def _healthy() -> bool:
            return all(api_ready(self.executor, s, self.sw, Mode.BEST_EFFORT) for s in servers) and self._ready_on(
                self.primary, expected, Mode.BEST_EFFORT
            )

        self._wait(_healthy, self.settings.health_timeout)
        _, statuses = node_statuses(self.executor, self.primary, self.sw, Mode.ABORT)
        for node in expected:
            ok = is_ready(statuses.get(node))
            if node in servers:
                ok = ok and api_ready(self.executor, node, self.sw, Mode.BEST_EFFORT)
            self.report.add(
                make_result(
                    HEALTH_PHASE,
                    node,
                    ok,
                    "Ready" if ok else f"not healthy (status {statuses.get(node, 'absent')})",
                    timer,
                    evidence={"status": statuses.get(node)},
                )
            )
            if not ok:
                with self._lock:
                    self.failed.add(node)

        if self.failed:
            self.machine.fail(f"nodes not healthy: {', '.join(sorted(self.failed))}")
        else:
            self.machine.advance(ClusterState.CLUSTER_READY)
        return self.machine.state
