from __future__ import annotations

from clusterlab.core.config import SoftwareSettings
from clusterlab.core.errors import CommandFailedError, StateCleanupError, TransientCommandError
from clusterlab.core.logging import get_logger
from clusterlab.bootstrap.software import cleanup_command

from .execution import Mode, NodeExecutor

log = get_logger(__name__)


def cleanup_stale_state(executor: NodeExecutor, node: str, software: SoftwareSettings) -> str:
    """Stop auto-started cluster software and wipe its persisted state.

    Images may boot the service with build-time placeholder credentials, so this
    runs on every node before it is initialised or joined, whether or not
    anything looks wrong. Returns the command that was run.
    """
    command = cleanup_command(software)
    try:
        executor.run(node, command, Mode.ABORT)
    except (CommandFailedError, TransientCommandError) as exc:
        raise StateCleanupError(f"{node}: stale cluster state could not be removed: {exc}", node, command) from exc
    log.debug("%s: stale cluster state removed", node)
    return command
