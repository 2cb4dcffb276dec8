from pathlib import Path

import yaml
from typer.testing import CliRunner

from clusterlab.cli import _parse_images, app

runner = CliRunner()


def test_profiles_lists_catalog_and_scenarios() -> None:
    result = runner.invoke(app, ["profiles"])
    assert result.exit_code == 0
    assert "bonding-vlans" in result.stdout
    assert "quorum-stress" in result.stdout


def test_plan_prints_wiring_and_reservations() -> None:
    result = runner.invoke(app, ["plan", "--scenario", "dhcp"])
    assert result.exit_code == 0
    plan = yaml.safe_load(result.stdout)
    assert plan["addresses"]["server-1"] == "192.168.1.1/24"
    assert {"node": "server-2", "mac": "52:54:00:01:01:02", "ip": "192.168.1.2"} in plan["reservations"]
    assert "ip link set eth1 up" in plan["setup"]["server-2"]


def test_plan_rejects_bad_selection() -> None:
    assert runner.invoke(app, ["plan", "--scenario", "nope"]).exit_code == 2
    assert runner.invoke(app, ["plan", "--scenario", "flat", "--profile", "simple"]).exit_code == 2
    assert runner.invoke(app, ["plan"]).exit_code == 2


def test_plan_from_profile_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("name: broken\nkind: flat\nnodes: []\n", encoding="utf-8")
    assert runner.invoke(app, ["plan", "--profile-file", str(path)]).exit_code == 2


def test_run_with_missing_config_exits_before_booting(tmp_path: Path) -> None:
    result = runner.invoke(app, ["run", "--scenario", "flat", "--config", str(tmp_path / "absent.yaml")])
    assert result.exit_code == 2


def test_parse_images() -> None:
    assert _parse_images(["/img/k3s.qcow2", "dhcp-server=/img/dnsmasq.qcow2"]) == {
        "*": "/img/k3s.qcow2",
        "dhcp-server": "/img/dnsmasq.qcow2",
    }


def test_out_of_range_cluster_id_is_a_configuration_error(tmp_path: Path) -> None:
    config = tmp_path / "harness.yaml"
    config.write_text("cluster_id: 300\n", encoding="utf-8")
    result = runner.invoke(app, ["plan", "--profile", "simple", "--config", str(config)])
    assert result.exit_code == 2
