from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from clusterlab.topology.builder import NodeWiring, WiringPlan


@dataclass(slots=True)
class CmdResult:
    rc: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.rc == 0

    @property
    def output(self) -> str:
        return "\n".join(x for x in (self.stdout, self.stderr) if x)


class CommandChannel(Protocol):
    """Anything that can run a shell command inside one node."""

    node: str

    def execute(self, command: str, timeout: float) -> CmdResult:
        """Run ``command``; raise CommandTimeoutError if it outlives ``timeout``."""
        ...

    def close(self) -> None: ...


class VmBackend(Protocol):
    """Boots node images and hands out command channels."""

    def prepare(self, plan: WiringPlan) -> None:
        """Create the virtual switches of ``plan``."""
        ...

    def start(self, wiring: NodeWiring) -> CommandChannel:
        """Start the VM for ``wiring`` and return its (possibly not yet connected) channel."""
        ...

    def stop(self, node: str) -> None: ...

    def teardown(self) -> None: ...
