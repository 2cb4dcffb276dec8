from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

from clusterlab.adapters.base import CmdResult
from clusterlab.adapters.shell import BackdoorShell
from clusterlab.core.errors import ConfigurationError, ImageNotFoundError
from clusterlab.core.logging import get_logger
from clusterlab.topology.builder import NodeWiring, WiringPlan

log = get_logger(__name__)


def _run(cmd: list[str]) -> CmdResult:
    p = subprocess.run(cmd, capture_output=True, text=True)
    return CmdResult(p.returncode, p.stdout.strip(), p.stderr.strip())


class QemuBackend:
    """QEMU/KVM guests on VDE switches, one switch per physical segment.

    Each guest boots from a copy-on-write overlay of its image and exposes a
    root shell on a virtio console socket under ``run_dir``.
    """

    def __init__(self, run_dir: Path, qemu: str = "qemu-system-x86_64", kvm: bool | None = None) -> None:
        self.run_dir = run_dir
        self.qemu = qemu
        self.kvm = os.path.exists("/dev/kvm") if kvm is None else kvm
        self.switches: dict[str, subprocess.Popen] = {}
        self.vms: dict[str, subprocess.Popen] = {}
        self._logs: list = []

    def _require(self, *tools: str) -> None:
        missing = [t for t in tools if shutil.which(t) is None]
        if missing:
            raise ConfigurationError(f"Required tools not found on PATH: {', '.join(missing)}")

    def switch_dir(self, switch: str) -> Path:
        return self.run_dir / "switches" / switch

    def prepare(self, plan: WiringPlan) -> None:
        self._require("vde_switch", "qemu-img", self.qemu)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        for switch in plan.switches:
            ctl = self.switch_dir(switch)
            ctl.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(self.run_dir / f"{switch}.log", "w", encoding="utf-8")
            self._logs.append(log_file)
            self.switches[switch] = subprocess.Popen(
                ["vde_switch", "-s", str(ctl), "--dirmode", "0700", "--hub"],
                stdin=subprocess.PIPE,
                stdout=log_file,
                stderr=subprocess.STDOUT,
            )
            log.debug("switch %s listening at %s", switch, ctl)

    def overlay(self, wiring: NodeWiring) -> Path:
        image = wiring.node.image
        if not image:
            raise ImageNotFoundError(wiring.name, "no image reference given")
        base = Path(image).expanduser().resolve()
        if not base.is_file():
            raise ImageNotFoundError(wiring.name, f"image {base} does not exist")
        disk = self.run_dir / f"{wiring.name}.qcow2"
        r = _run(["qemu-img", "create", "-f", "qcow2", "-b", str(base), "-F", "qcow2", str(disk)])
        if r.rc != 0:
            raise ImageNotFoundError(wiring.name, f"cannot create overlay on {base}: {r.stderr}")
        return disk

    def command_line(self, wiring: NodeWiring, disk: Path, console: Path) -> list[str]:
        node = wiring.node
        cmd = [
            self.qemu,
            "-name", node.name,
            "-m", str(node.memory_mb),
            "-smp", str(node.vcpus),
            "-nographic",
            "-drive", f"file={disk},if=virtio,format=qcow2",
            "-chardev", f"socket,id=shell,path={console},server=on,wait=off",
            "-device", "virtio-serial",
            "-device", "virtconsole,chardev=shell",
            "-serial", f"file:{self.run_dir / f'{node.name}.serial.log'}",
        ]
        if self.kvm:
            cmd += ["-enable-kvm", "-cpu", "host"]
        # eth0 is left to the image (user networking); test NICs start at eth1
        cmd += ["-netdev", "user,id=mgmt", "-device", "virtio-net-pci,netdev=mgmt"]
        for index, nic in enumerate(sorted(wiring.nics, key=lambda n: n.nic), start=1):
            cmd += [
                "-netdev", f"vde,id=n{index},sock={self.switch_dir(nic.switch)}",
                "-device", f"virtio-net-pci,netdev=n{index},mac={nic.mac}",
            ]
        return cmd

    def start(self, wiring: NodeWiring) -> BackdoorShell:
        disk = self.overlay(wiring)
        console = self.run_dir / f"{wiring.name}.console"
        if console.exists():
            console.unlink()
        log_file = open(self.run_dir / f"{wiring.name}.qemu.log", "w", encoding="utf-8")
        self._logs.append(log_file)
        cmd = self.command_line(wiring, disk, console)
        log.debug("%s: %s", wiring.name, " ".join(cmd))
        self.vms[wiring.name] = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=log_file, stderr=subprocess.STDOUT)
        return BackdoorShell(wiring.name, console)

    def stop(self, node: str) -> None:
        proc = self.vms.pop(node, None)
        if proc is None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=15)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def teardown(self) -> None:
        for node in list(self.vms):
            self.stop(node)
        for switch, proc in self.switches.items():
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
            log.debug("switch %s stopped", switch)
        self.switches.clear()
        for handle in self._logs:
            handle.close()
        self._logs.clear()
