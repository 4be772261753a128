"""
Harness configuration - port ranges, timeouts, VM sizing and guest credentials.
"""
import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .ports import PortRange

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILE = "forge.yml"


@dataclass(frozen=True)
class GuestCredentials:
    """Login used for the guest's SSH server.

    The defaults (root, empty password, no host key verification) are only
    acceptable because guests are ephemeral test VMs reachable solely through
    a port forward on 127.0.0.1. Never point the harness at a real machine.
    """

    username: str = "root"
    password: str = ""
    key_file: Optional[Path] = None


@dataclass
class ProjectInfo:
    """The parts of forge.yml the harness cares about."""

    name: str
    architecture: str
    test_settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HarnessConfig:
    """Typed configuration for the VM test harness."""

    project_dir: Path = field(default_factory=Path.cwd)
    project_name: str = "forge"
    architecture: str = "x86_64"

    # VM sizing and command line
    memory_mb: int = 512
    qemu_binary: Optional[str] = None
    kernel_cmdline: str = ""
    extra_args: List[str] = field(default_factory=list)

    # Host port ranges, each allocated independently per instance
    monitor_ports: PortRange = PortRange(4444, 4500)
    ssh_ports: PortRange = PortRange(2222, 2300)
    serial_ports: PortRange = PortRange(8000, 8100)

    # Timeouts (seconds)
    boot_timeout: float = 30.0
    boot_poll_interval: float = 1.0
    ssh_connect_timeout: float = 5.0
    shutdown_grace_period: float = 2.0
    monitor_timeout: float = 2.0
    metrics_command_timeout: float = 10.0

    credentials: GuestCredentials = field(default_factory=GuestCredentials)

    @property
    def results_dir(self) -> Path:
        return self.project_dir / "test-results"

    @property
    def logs_dir(self) -> Path:
        return self.project_dir / "test-logs"

    def config_hash(self) -> str:
        """Short hash of the settings that influence test outcomes."""
        relevant = {
            "architecture": self.architecture,
            "memory_mb": self.memory_mb,
            "qemu_binary": self.qemu_binary,
            "kernel_cmdline": self.kernel_cmdline,
            "extra_args": self.extra_args,
        }
        digest = hashlib.sha256(json.dumps(relevant, sort_keys=True).encode())
        return digest.hexdigest()[:12]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["project_dir"] = str(self.project_dir)
        for name in ("monitor_ports", "ssh_ports", "serial_ports"):
            data[name] = str(getattr(self, name))
        creds = data["credentials"]
        creds["password"] = "***" if self.credentials.password else ""
        if creds["key_file"] is not None:
            creds["key_file"] = str(creds["key_file"])
        return data


def _parse_port_range(value: Any) -> PortRange:
    """Accept "low-high", [low, high] or {"low": .., "high": ..}."""
    if isinstance(value, PortRange):
        return value
    if isinstance(value, str) and "-" in value:
        low, high = value.split("-", 1)
        return PortRange(int(low), int(high))
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return PortRange(int(value[0]), int(value[1]))
    if isinstance(value, dict):
        return PortRange(int(value["low"]), int(value["high"]))
    raise ValueError(f"Invalid port range: {value!r}")


def load_project_config(project_dir: Path) -> ProjectInfo:
    """Read name and architecture from the project's forge.yml.

    Args:
        project_dir: Forge project directory

    Returns:
        ProjectInfo (defaults if forge.yml is absent)

    Raises:
        ValueError: if forge.yml exists but cannot be parsed
    """
    config_path = Path(project_dir) / PROJECT_CONFIG_FILE
    if not config_path.exists():
        logger.info(f"No {PROJECT_CONFIG_FILE} in {project_dir}, using defaults")
        return ProjectInfo(name=Path(project_dir).resolve().name or "forge", architecture="x86_64")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Invalid {config_path}: expected a mapping")

    test_settings = raw.get("test") or {}
    if not isinstance(test_settings, dict):
        raise ValueError(f"Invalid {config_path}: 'test' must be a mapping")

    return ProjectInfo(
        name=str(raw.get("name") or Path(project_dir).resolve().name),
        architecture=str(raw.get("architecture") or "x86_64"),
        test_settings=test_settings,
    )


def load_harness_config(project_dir: Path, **overrides: Any) -> HarnessConfig:
    """Build a HarnessConfig from forge.yml plus keyword overrides.

    The optional ``test:`` section of forge.yml may set any HarnessConfig
    field; keyword overrides win over the file. None-valued overrides are
    ignored so tool arguments can be passed straight through.

    Raises:
        ValueError: on unknown keys or malformed values
    """
    project_dir = Path(project_dir)
    project = load_project_config(project_dir)

    settings: Dict[str, Any] = dict(project.test_settings)
    settings.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(HarnessConfig)}
    unknown = sorted(set(settings) - known)
    if unknown:
        raise ValueError(f"Unknown harness settings: {', '.join(unknown)}")

    for name in ("monitor_ports", "ssh_ports", "serial_ports"):
        if name in settings:
            settings[name] = _parse_port_range(settings[name])

    if "credentials" in settings and isinstance(settings["credentials"], dict):
        creds = dict(settings["credentials"])
        if creds.get("key_file"):
            creds["key_file"] = Path(creds["key_file"]).expanduser()
        settings["credentials"] = GuestCredentials(**creds)

    if "project_dir" in settings:
        settings["project_dir"] = Path(settings["project_dir"])

    settings.setdefault("project_dir", project_dir)
    settings.setdefault("project_name", project.name)
    settings.setdefault("architecture", project.architecture)

    config = HarnessConfig(**settings)
    if config.boot_poll_interval <= 0 or config.boot_timeout <= 0:
        raise ValueError("boot_timeout and boot_poll_interval must be positive")
    if config.memory_mb <= 0:
        raise ValueError("memory_mb must be positive")
    return config
