from pathlib import Path

_ORDER = ["boot", "network", "bootstrap-primary", "bootstrap-secondary", "bootstrap-agents", "bond-failover", "health"]


def render_markdown(payload: dict) -> str:
    summary = payload.get("summary", {})
    lines = [f"# clusterlab run `{payload.get('run', '?')}`", "", "## Summary"]
    lines.append(f"- Profile: {payload.get('profile', '?')}")
    lines.append(f"- Outcome: **{summary.get('outcome', 'UNKNOWN')}** (expected {summary.get('expected_outcome', 'CLUSTER_READY')})")
    lines.append(f"- Exit code: {summary.get('exit_code', 1)}")
    lines.append(f"- Status counts: {summary.get('counts_by_status', {})}")
    lines.append("")

    errors = payload.get("errors", [])
    if errors:
        lines.append("## Fatal errors")
        for err in errors:
            command = f" `{err['command']}`" if err.get("command") else ""
            lines.append(f"- [{err['phase']}] {err['node']} {err['kind']}{command}: {err['message']}")
        lines.append("")

    lines.append("## Results")
    grouped: dict[str, list[dict]] = {}
    for item in payload.get("results", []):
        grouped.setdefault(item.get("phase", "other"), []).append(item)
    phases = sorted(grouped, key=lambda p: _ORDER.index(p) if p in _ORDER else len(_ORDER))
    for phase in phases:
        lines.append(f"### {phase}")
        for item in grouped[phase]:
            lines.append(f"- **{item['status']}** `{item['node']}` ({item.get('duration_s', 0)}s): {item['message']}")
        lines.append("")

    diagnostics = payload.get("metadata", {}).get("diagnostics", {})
    if diagnostics:
        lines.append("## Diagnostics")
        for node, items in diagnostics.items():
            lines.append(f"### {node}")
            for label, text in items.items():
                lines.extend([f"#### {label}", "```", text, "```"])
        lines.append("")
    return "\n".join(lines)


def write_markdown_report(payload: dict, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(render_markdown(payload), encoding="utf-8")
