class ClusterlabError(Exception):
    """Base error for clusterlab exceptions."""


class ConfigurationError(ClusterlabError):
    """Invalid input: settings, profile, image or boot defects. Never retried."""


class ProfileValidationError(ConfigurationError):
    """Raised when a network profile cannot be turned into a wiring plan."""


class ImageNotFoundError(ConfigurationError):
    """Raised when a node image reference does not resolve."""

    def __init__(self, node: str, detail: str) -> None:
        super().__init__(f"{node}: {detail}")
        self.node = node


class BootTimeoutError(ConfigurationError):
    """Raised when a VM does not reach its boot marker in time."""

    def __init__(self, node: str, marker: str, timeout: float) -> None:
        super().__init__(f"{node} did not reach {marker} within {timeout:.0f}s")
        self.node = node
        self.marker = marker
        self.timeout = timeout


class CommandError(ClusterlabError):
    def __init__(self, message: str, node: str | None = None, command: str | None = None) -> None:
        super().__init__(message)
        self.node = node
        self.command = command


class TransientCommandError(CommandError):
    """A failure the resilience layer may retry."""


class CommandTimeoutError(TransientCommandError):
    """Raised when a command channel does not answer within its timeout."""


class CommandFailedError(CommandError):
    """Raised by abort-mode execution when a command exits non-zero."""

    def __init__(self, node: str, command: str, rc: int, stdout: str = "", stderr: str = "") -> None:
        detail = (stderr or stdout).strip()
        super().__init__(f"{node}: `{command}` exited {rc}" + (f": {detail}" if detail else ""), node, command)
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr


class StateCleanupError(CommandError):
    """Raised when stale cluster state cannot be removed before bootstrap."""


class ProtocolError(CommandError):
    """Raised when a node rejects a join for a non-transient reason."""


class RetryExhaustedError(ClusterlabError):
    def __init__(self, operation: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(ClusterlabError):
    """Raised when the bootstrap state machine is asked to skip a phase."""
