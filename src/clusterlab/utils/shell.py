from __future__ import annotations

import shlex

HEREDOC_MARK = "CLUSTERLAB_EOF"


def write_file(path: str, content: str, mode: str | None = None) -> str:
    """Shell command that writes ``content`` to ``path`` verbatim."""
    parent = path.rsplit("/", 1)[0] or "/"
    body = content if content.endswith("\n") else content + "\n"
    cmd = f"mkdir -p {shlex.quote(parent)} && cat > {shlex.quote(path)} <<'{HEREDOC_MARK}'\n{body}{HEREDOC_MARK}"
    if mode:
        cmd += f"\nchmod {mode} {shlex.quote(path)}"
    return cmd


def heredoc_body(command: str) -> str | None:
    start = command.find(f"<<'{HEREDOC_MARK}'\n")
    if start < 0:
        return None
    start = command.index("\n", start) + 1
    end = command.find(f"\n{HEREDOC_MARK}", start - 1)
    return command[start:end + 1] if end >= 0 else None
