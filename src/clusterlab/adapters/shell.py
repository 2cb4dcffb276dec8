from __future__ import annotations

import base64
import shlex
import socket
import threading
import time
from pathlib import Path

from clusterlab.adapters.base import CmdResult
from clusterlab.core.errors import CommandTimeoutError, TransientCommandError
from clusterlab.core.logging import get_logger

log = get_logger(__name__)

READY_BANNER = b"Spawning backdoor root shell..."
_ERR_FILE = "/tmp/.clusterlab-stderr"
# extra time the guest gets beyond the command's own `timeout`
_GRACE = 10.0


class BackdoorShell:
    """Command channel over the guest's virtio console root shell.

    The guest prints READY_BANNER and then execs bash on the console. Each
    command's stdout and stderr travel base64 encoded on single lines so that
    console noise cannot be mistaken for output.
    """

    def __init__(self, node: str, socket_path: Path, connect_timeout: float = 5.0) -> None:
        self.node = node
        self.socket_path = socket_path
        self.connect_timeout = connect_timeout
        self._sock: socket.socket | None = None
        self._buffer = b""
        self._attached = False
        self._seq = 0
        self._lock = threading.Lock()

    def _connect(self, timeout: float) -> socket.socket:
        deadline = time.monotonic() + timeout
        if self._sock is None:
            self._sock = self._open(deadline)
        if not self._attached:
            # keep the socket: the banner is printed once per boot
            self._read_until(READY_BANNER, deadline)
            self._attached = True
            log.debug("%s: backdoor shell attached", self.node)
        return self._sock

    def _open(self, deadline: float) -> socket.socket:
        while True:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(str(self.socket_path))
                break
            except OSError as exc:
                sock.close()
                if time.monotonic() >= deadline:
                    raise TransientCommandError(f"{self.node}: console socket not available: {exc}", self.node) from exc
                time.sleep(0.5)
        self._buffer = b""
        return sock

    def _read_until(self, marker: bytes, deadline: float) -> bytes:
        assert self._sock is not None
        while marker not in self._buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CommandTimeoutError(f"{self.node}: console did not answer in time", self.node)
            self._sock.settimeout(remaining)
            try:
                chunk = self._sock.recv(65536)
            except socket.timeout as exc:
                raise CommandTimeoutError(f"{self.node}: console did not answer in time", self.node) from exc
            except OSError as exc:
                self._drop()
                raise TransientCommandError(f"{self.node}: console connection lost: {exc}", self.node) from exc
            if not chunk:
                self._drop()
                raise TransientCommandError(f"{self.node}: console closed", self.node)
            self._buffer += chunk
        head, _, self._buffer = self._buffer.partition(marker)
        return head

    def _line(self, deadline: float) -> str:
        return self._read_until(b"\n", deadline).decode("utf-8", errors="replace").strip()

    def _drop(self) -> None:
        if self._sock is not None:
            self._sock.close()
        self._sock = None
        self._buffer = b""
        self._attached = False

    def execute(self, command: str, timeout: float) -> CmdResult:
        with self._lock:
            deadline = time.monotonic() + timeout + _GRACE
            sock = self._connect(timeout if self._attached else min(timeout, self.connect_timeout))
            self._seq += 1
            sentinel = f"__clusterlab_{self._seq}__"
            wrapped = (
                f"echo {sentinel}\n"
                f"( timeout {max(1, int(timeout))} bash -c {shlex.quote(command)} ) 2>{_ERR_FILE} "
                "| (base64 -w 0; echo)\n"
                "echo ${PIPESTATUS[0]}\n"
                f"base64 -w 0 {_ERR_FILE}; echo\n"
            )
            try:
                sock.sendall(wrapped.encode("utf-8"))
                # anything before the sentinel is left over from an earlier timed-out command
                self._read_until(f"{sentinel}\n".encode(), deadline)
                stdout = self._line(deadline)
                status = self._line(deadline)
                stderr = self._line(deadline)
            except CommandTimeoutError as exc:
                raise CommandTimeoutError(str(exc), self.node, command) from exc
            except OSError as exc:
                self._drop()
                raise TransientCommandError(f"{self.node}: console write failed: {exc}", self.node, command) from exc
        rc = int(status) if status.lstrip("-").isdigit() else 255
        if rc == 124:
            raise CommandTimeoutError(f"{self.node}: `{command}` exceeded {timeout:.0f}s", self.node, command)
        return CmdResult(rc, _decode(stdout).strip(), _decode(stderr).strip())

    def close(self) -> None:
        with self._lock:
            self._drop()


def _decode(line: str) -> str:
    try:
        return base64.b64decode(line).decode("utf-8", errors="replace")
    except ValueError:
        return line
