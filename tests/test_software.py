import yaml

from clusterlab.bootstrap import software
from clusterlab.core.config import SoftwareSettings
from clusterlab.profiles.catalog import HA_AGENT_ROSTER, build_profile
from clusterlab.topology.builder import build_wiring
from clusterlab.utils.shell import heredoc_body

SW = SoftwareSettings()


def test_primary_config_initialises_the_cluster() -> None:
    plan = build_wiring(build_profile("simple"))
    cfg = software.node_config(plan, "server-1", "s3cret", SW)
    assert cfg["cluster-init"] is True
    assert "server" not in cfg
    assert cfg["node-ip"] == cfg["advertise-address"] == "192.168.1.1"
    assert cfg["tls-san"] == ["192.168.1.1"]
    assert cfg["flannel-iface"] == "eth1"
    assert cfg["disable"] == ["traefik", "servicelb"]


def test_secondary_and_agent_configs_point_at_a_server() -> None:
    plan = build_wiring(build_profile("vlans", HA_AGENT_ROSTER))
    url = software.server_url("192.168.200.1", SW)
    secondary = software.node_config(plan, "server-2", "s3cret", SW, server=url)
    assert secondary["server"] == "https://192.168.200.1:6443"
    assert secondary["tls-san"] == ["192.168.200.1", "192.168.200.2"]
    assert secondary["flannel-iface"] == "eth1.200"
    assert "cluster-init" not in secondary

    agent = software.node_config(plan, "agent-1", "s3cret", SW, server=url)
    assert agent == {
        "node-name": "agent-1",
        "node-ip": "192.168.200.3",
        "flannel-iface": "eth1.200",
        "token": "s3cret",
        "server": "https://192.168.200.1:6443",
    }


def test_install_command_stages_config_and_restarts_only_on_change() -> None:
    cfg = {"node-name": "server-2", "token": "s3cret"}
    cmd = software.install_config_command(cfg, "k3s-server.service", SW)
    assert yaml.safe_load(heredoc_body(cmd)) == cfg
    assert "cat > /etc/rancher/k3s/config.yaml.clusterlab" in cmd
    assert "chmod 0600 /etc/rancher/k3s/config.yaml.clusterlab" in cmd
    assert "cmp -s /etc/rancher/k3s/config.yaml.clusterlab /etc/rancher/k3s/config.yaml" in cmd
    assert f"echo '{software.ALREADY_CONFIGURED}'" in cmd
    assert "systemctl restart k3s-server.service" in cmd


def test_cleanup_removes_token_and_verifies_it_is_gone() -> None:
    cmd = software.cleanup_command(SW)
    assert cmd.startswith("systemctl stop k3s-server.service k3s-agent.service")
    assert "/var/lib/rancher/k3s/server/token" in cmd.split("; ")[2]
    assert cmd.endswith("test ! -e /var/lib/rancher/k3s/server/token")


def test_token_matches_server_token_file() -> None:
    assert software.token_matches("K10abcdef::server:s3cret\n", "s3cret")
    assert software.token_matches("s3cret", "s3cret")
    assert not software.token_matches("K10placeholder::server:build-time-token", "s3cret")


def test_join_failure_classification() -> None:
    assert software.is_transient_join_failure('msg="dial tcp 192.168.1.1:6443: connect: no route to host"')
    assert software.is_transient_join_failure("etcdserver: leader changed")
    assert software.is_transient_join_failure("Failed to get CA certs: context deadline exceeded")
    assert not software.is_transient_join_failure("token CA hash does not match the Cluster CA certificate hash")


def test_readiness_and_probe_commands() -> None:
    assert software.readyz_command(SW) == "k3s kubectl get --raw /readyz"
    assert software.nodes_command(SW) == "k3s kubectl get nodes --no-headers"
    assert software.prewarm_command("192.168.200.1", SW, 15) == "timeout 15 curl -sk https://192.168.200.1:6443/cacerts"
