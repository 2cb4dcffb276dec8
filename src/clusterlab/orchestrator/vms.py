from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from clusterlab.adapters.base import CommandChannel, VmBackend
from clusterlab.core.config import HarnessSettings
from clusterlab.core.errors import BootTimeoutError, ClusterlabError, TransientCommandError
from clusterlab.core.logging import get_logger
from clusterlab.topology.builder import NodeWiring, WiringPlan

log = get_logger(__name__)

WaveHook = Callable[[list[NodeWiring]], None]


def marker_command(marker: str) -> str:
    return f"systemctl is-active --quiet {marker}"


class VmOrchestrator:
    """One VM per node, booted in waves, each exposing a command channel."""

    def __init__(
        self,
        backend: VmBackend,
        plan: WiringPlan,
        settings: HarnessSettings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.plan = plan
        self.settings = settings
        self.clock = clock
        self.sleep = sleep
        self.channels: dict[str, CommandChannel] = {}
        self.boot_times: dict[str, float] = {}
        self.stopped: set[str] = set()
        self._prepared = False

    def channel(self, node: str) -> CommandChannel:
        if node in self.stopped:
            raise ClusterlabError(f"{node} has been shut down")
        try:
            return self.channels[node]
        except KeyError:
            raise ClusterlabError(f"{node} is not running") from None

    def boot(self, after_wave: WaveHook | None = None) -> dict[str, float]:
        """Boot every wave in order; ``after_wave`` runs once a wave is fully up.

        Infrastructure nodes form the first wave so that services they provide
        (DHCP) are listening before any cluster node asks for them.
        """
        if not self._prepared:
            self.backend.prepare(self.plan)
            self._prepared = True
        for index, wave in enumerate(self.plan.boot_waves(), start=1):
            if not wave:
                continue
            log.info("boot wave %d: %s", index, ", ".join(w.name for w in wave))
            self._boot_wave(wave)
            if after_wave is not None:
                after_wave(wave)
        return dict(self.boot_times)

    def _boot_wave(self, wave: list[NodeWiring]) -> None:
        errors: list[BaseException] = []
        with ThreadPoolExecutor(max_workers=len(wave), thread_name_prefix="boot") as pool:
            futures = {pool.submit(self._boot_one, wiring): wiring.name for wiring in wave}
            for future, name in futures.items():
                try:
                    self.boot_times[name] = future.result()
                except ClusterlabError as exc:
                    log.error("%s: %s", name, exc)
                    errors.append(exc)
        if errors:
            raise errors[0]

    def _boot_one(self, wiring: NodeWiring) -> float:
        started = self.clock()
        channel = self.backend.start(wiring)
        self.channels[wiring.name] = channel
        marker = self.settings.boot_marker
        deadline = started + self.settings.boot_timeout
        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise BootTimeoutError(wiring.name, marker, self.settings.boot_timeout)
            try:
                if channel.execute(marker_command(marker), min(remaining, self.settings.command_timeout)).ok:
                    elapsed = self.clock() - started
                    log.info("%s reached %s after %.1fs", wiring.name, marker, elapsed)
                    return elapsed
            except TransientCommandError as exc:
                log.debug("%s: not reachable yet: %s", wiring.name, exc)
            self.sleep(min(self.settings.poll_interval, max(0.0, deadline - self.clock())))

    def stop(self, node: str) -> None:
        if node in self.stopped:
            return
        channel = self.channels.get(node)
        if channel is not None:
            channel.close()
        self.backend.stop(node)
        self.stopped.add(node)
        log.info("%s shut down", node)

    def teardown(self) -> None:
        for channel in self.channels.values():
            try:
                channel.close()
            except OSError as exc:
                log.debug("closing %s: %s", channel.node, exc)
        self.backend.teardown()
        self.channels.clear()
        log.info("all VMs torn down")
