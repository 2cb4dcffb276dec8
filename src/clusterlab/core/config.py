from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from clusterlab.core.errors import ConfigurationError
from clusterlab.utils.yaml import load_yaml


@dataclass(frozen=True, slots=True)
class SoftwareSettings:
    server_unit: str = "k3s-server.service"
    agent_unit: str = "k3s-agent.service"
    data_dir: str = "/var/lib/rancher/k3s"
    config_path: str = "/etc/rancher/k3s/config.yaml"
    kubectl: str = "k3s kubectl"
    api_port: int = 6443
    cluster_cidr: str = "10.42.0.0/16"
    service_cidr: str = "10.43.0.0/16"
    disable: tuple[str, ...] = ("traefik", "servicelb")


@dataclass(frozen=True, slots=True)
class HarnessSettings:
    cluster_id: int = 1
    run_dir: Path = Path("artifacts/run")
    boot_marker: str = "multi-user.target"
    dhcp_unit: str = "dnsmasq.service"
    boot_timeout: float = 180.0
    command_timeout: float = 60.0
    lease_timeout: float = 60.0
    primary_ready_timeout: float = 300.0
    join_ready_timeout: float = 300.0
    health_timeout: float = 120.0
    poll_interval: float = 5.0
    settling_window: float = 30.0
    prewarm_attempts: int = 3
    prewarm_timeout: float = 15.0
    prewarm_backoff: float = 2.0
    retry_attempts: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 30.0
    cpu_stress_seconds: float = 20.0
    stop_infra_after_leases: bool = False
    software: SoftwareSettings = field(default_factory=SoftwareSettings)

    def with_overrides(self, **overrides: Any) -> HarnessSettings:
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean)


_PATH_KEYS = {"run_dir"}


def _coerce(name: str, default: Any, value: Any) -> Any:
    if name in _PATH_KEYS:
        return Path(str(value))
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"Setting {name} must be true or false")
        return value
    if isinstance(default, tuple):
        if isinstance(value, str):
            return tuple(x.strip() for x in value.split(",") if x.strip())
        return tuple(str(x) for x in value)
    try:
        return type(default)(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Setting {name} has invalid value {value!r}") from exc


def _build(cls: type, data: dict[str, Any], section: str) -> Any:
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(f"Unknown {section} setting(s): {', '.join(unknown)}")
    defaults = cls()
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key == "software" and cls is HarnessSettings:
            if not isinstance(value, dict):
                raise ConfigurationError("Setting software must be a mapping")
            kwargs[key] = _build(SoftwareSettings, value, "software")
            continue
        kwargs[key] = _coerce(key, getattr(defaults, key), value)
    return cls(**kwargs)


def load_settings(path: Path | None = None) -> HarnessSettings:
    if path is None:
        return HarnessSettings()
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}")
    settings = _build(HarnessSettings, load_yaml(path), "harness")
    if settings.retry_attempts < 1:
        raise ConfigurationError("retry_attempts must be at least 1")
    if settings.prewarm_attempts < 0 or settings.settling_window < 0:
        raise ConfigurationError("prewarm_attempts and settling_window must not be negative")
    if not 0 <= settings.cluster_id <= 0xFF:
        raise ConfigurationError(f"cluster_id {settings.cluster_id} outside 0-255")
    return settings
