"""
Shared fixtures and fakes for harness tests.
"""
import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import pytest

from forgetest_mcp.config import HarnessConfig
from forgetest_mcp.errors import CommandFailedError
from forgetest_mcp.remote import CommandResult
from forgetest_mcp.results import TestResult
from forgetest_mcp.vm_manager import ImageArtifacts, VMInstance


class FakeExecutor:
    """Stands in for RemoteExecutor; answers commands from a substring table."""

    def __init__(
        self,
        responses: Optional[Dict[str, Union[str, Exception]]] = None,
        reachable: bool = True,
    ):
        self.responses = responses or {}
        self.reachable = reachable
        self.commands: List[str] = []
        self.probes = 0

    async def probe(self, instance) -> bool:
        self.probes += 1
        return self.reachable

    async def execute(self, instance, command: str, timeout: float) -> CommandResult:
        self.commands.append(command)
        for fragment, response in self.responses.items():
            if fragment in command:
                if isinstance(response, Exception):
                    raise response
                return CommandResult(stdout=response, stderr="", exit_status=0)
        raise CommandFailedError(command, "exit status 127", exit_status=127)


def make_instance(tmp_path: Path, instance_id: str = "qemu-test") -> VMInstance:
    disk = tmp_path / "rootfs.ext4"
    if not disk.exists():
        disk.write_bytes(b"\0" * 16)
    return VMInstance(
        id=instance_id,
        image=ImageArtifacts(disk=disk),
        monitor_port=4444,
        ssh_port=2222,
        serial_port=8000,
        log_path=tmp_path / f"qemu-{instance_id}.log",
    )


def make_result(
    name: str,
    success: bool = True,
    duration: float = 1.0,
    error: str = "",
    instance_id: str = "qemu-test",
) -> TestResult:
    start = datetime.datetime(2025, 1, 1, 12, 0, 0)
    return TestResult(
        test_name=name,
        success=success,
        start_time=start,
        end_time=start + datetime.timedelta(seconds=duration),
        output=f"{name} output",
        error=error if error or success else f"{name} failed",
        instance_id=instance_id,
    )


@pytest.fixture
def harness_config(tmp_path):
    """Config with short timeouts rooted in a temporary project directory."""
    return HarnessConfig(
        project_dir=tmp_path,
        project_name="demo",
        boot_timeout=2.0,
        boot_poll_interval=0.05,
        shutdown_grace_period=0.1,
        monitor_timeout=0.5,
    )


@pytest.fixture
def image_dir(tmp_path):
    """Artifacts directory with a kernel and a root filesystem image."""
    images = tmp_path / "build" / "artifacts" / "images"
    images.mkdir(parents=True)
    (images / "bzImage").write_bytes(b"kernel")
    (images / "rootfs.ext4").write_bytes(b"\0" * 1024)
    return images
