from __future__ import annotations

from pathlib import Path

import typer

from clusterlab.adapters.qemu import QemuBackend
from clusterlab.core.config import HarnessSettings, load_settings
from clusterlab.core.errors import ConfigurationError
from clusterlab.core.logging import configure_logging
from clusterlab.core.results import RunReport
from clusterlab.phases.engine import execute_run
from clusterlab.profiles.catalog import CATALOG, build_profile, with_images
from clusterlab.profiles.loader import load_profile
from clusterlab.profiles.scenarios import SCENARIOS, get_scenario
from clusterlab.profiles.schema import NetworkProfile
from clusterlab.render.report_json import write_json_report
from clusterlab.render.report_md import write_markdown_report
from clusterlab.topology import netconfig
from clusterlab.topology.builder import WiringPlan, build_wiring
from clusterlab.utils.yaml import dump_yaml

app = typer.Typer(add_completion=False)


def _parse_images(values: list[str]) -> dict[str, str]:
    images: dict[str, str] = {}
    for value in values:
        name, sep, path = value.partition("=")
        if sep:
            images[name] = path
        else:
            images["*"] = value
    return images


def _resolve(
    scenario: str | None,
    profile: str | None,
    profile_file: Path | None,
    settings: HarnessSettings,
    images: dict[str, str],
) -> tuple[NetworkProfile, tuple[str, ...]]:
    chosen = [x for x in (scenario, profile, profile_file) if x]
    if len(chosen) != 1:
        raise ConfigurationError("give exactly one of --scenario, --profile or --profile-file")
    if scenario:
        s = get_scenario(scenario)
        return s.build(settings.cluster_id, images), s.faults
    if profile:
        return build_profile(profile, cluster_id=settings.cluster_id, images=images), ()
    return with_images(load_profile(profile_file), images), ()


def _print_console(report: RunReport) -> None:
    for result in report.results:
        typer.echo(f"[{result.phase}] {result.status.value:7} {result.node} - {result.message}")
    for error in report.errors:
        typer.echo(f"FATAL [{error.phase}] {error.node} {error.kind}: {error.message}", err=True)
    typer.echo(f"Outcome: {report.outcome.value} (expected {report.expected.value})")
    typer.echo(f"Exit code: {report.exit_code}")


def _plan_payload(plan: WiringPlan) -> dict:
    payload = plan.to_dict()
    payload["setup"] = {w.name: netconfig.setup_commands(w) for w in plan.nodes}
    payload["addresses"] = {w.name: plan.expected_address(w.name) for w in plan.cluster_nodes()}
    return payload


@app.command()
def profiles() -> None:
    """List catalog profiles and named scenarios."""
    typer.echo("Profiles:")
    for name in CATALOG:
        typer.echo(f"  {name:16} {build_profile(name).description}")
    typer.echo("Scenarios:")
    for name, s in SCENARIOS.items():
        faults = f" [faults: {', '.join(s.faults)}]" if s.faults else ""
        typer.echo(f"  {name:16} {s.profile}: {s.description}{faults}")


@app.command()
def plan(
    scenario: str | None = typer.Option(None, "--scenario"),
    profile: str | None = typer.Option(None, "--profile"),
    profile_file: Path | None = typer.Option(None, "--profile-file"),
    config: Path | None = typer.Option(None, "--config"),
) -> None:
    """Print the wiring plan, addressing and DHCP reservations without booting anything."""
    try:
        settings = load_settings(config)
        net, _ = _resolve(scenario, profile, profile_file, settings, {})
        wiring = build_wiring(net)
    except ConfigurationError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    typer.echo(dump_yaml(_plan_payload(wiring)))


@app.command()
def run(
    scenario: str | None = typer.Option(None, "--scenario"),
    profile: str | None = typer.Option(None, "--profile"),
    profile_file: Path | None = typer.Option(None, "--profile-file"),
    image: list[str] = typer.Option([], "--image", help="NODE=PATH, or PATH for every node"),
    config: Path | None = typer.Option(None, "--config"),
    run_dir: Path | None = typer.Option(None, "--run-dir"),
    json_out: Path | None = typer.Option(None, "--json-out"),
    md_out: Path | None = typer.Option(None, "--md-out"),
    verbose: bool = typer.Option(False, "--verbose"),
) -> None:
    """Boot the topology, form the cluster and report the outcome."""
    configure_logging(verbose)
    try:
        settings = load_settings(config).with_overrides(run_dir=run_dir)
        net, faults = _resolve(scenario, profile, profile_file, settings, _parse_images(image))
        wiring = build_wiring(net)
        report = execute_run(wiring, settings, QemuBackend(settings.run_dir), faults)
    except ConfigurationError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)

    _print_console(report)
    name = scenario or net.name
    payload = report.to_dict()
    write_json_report(payload, json_out or Path("artifacts") / f"{name}-run.json")
    write_markdown_report(payload, md_out or Path("artifacts") / f"{name}-run.md")
    raise typer.Exit(code=report.exit_code)


if __name__ == "__main__":
    app()
