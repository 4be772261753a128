"""
Tests for QEMU instance lifecycle management.

Real processes (``sleep``) stand in for QEMU so that launch, kill and reap
paths run for real without needing an emulator.
"""
import asyncio
import signal
import socket
import subprocess
from unittest.mock import patch

import pytest

from conftest import FakeExecutor, make_instance
from forgetest_mcp.config import HarnessConfig
from forgetest_mcp.errors import BootTimeoutError, LaunchFailedError, PortExhaustedError
from forgetest_mcp.ports import PortRange
from forgetest_mcp.vm_manager import (
    ARCH_PROFILES,
    ImageArtifacts,
    InstanceState,
    VMManager,
    generate_instance_id,
    get_arch_profile,
    locate_image_artifacts,
)

real_popen = subprocess.Popen


def sleeping_command(self, instance):
    return ["sleep", "30"]


@pytest.fixture
def spawned():
    """Record processes started through subprocess.Popen."""
    processes = []

    def spawn(*args, **kwargs):
        process = real_popen(*args, **kwargs)
        processes.append(process)
        return process

    with patch("forgetest_mcp.vm_manager.subprocess.Popen", side_effect=spawn):
        yield processes

    for process in processes:
        if process.poll() is None:
            process.kill()
            process.wait()


class TestArchProfiles:
    def test_known_architectures(self):
        assert get_arch_profile("x86_64").qemu_binary == "qemu-system-x86_64"
        assert get_arch_profile("aarch64").machine == "virt"
        assert get_arch_profile("arm").root_device == "/dev/sda"

    def test_unknown_architecture_falls_back(self, caplog):
        with caplog.at_level("WARNING"):
            profile = get_arch_profile("sparc64")

        assert profile == ARCH_PROFILES["x86_64"]
        assert "sparc64" in caplog.text


class TestLocateImageArtifacts:
    def test_directory_prefers_rootfs_and_finds_kernel(self, image_dir):
        (image_dir / "other.img").write_bytes(b"\0")

        artifacts = locate_image_artifacts(image_dir)

        assert artifacts.disk == image_dir / "rootfs.ext4"
        assert artifacts.kernel == image_dir / "bzImage"
        assert artifacts.disk_format == "raw"

    def test_directory_falls_back_to_img(self, tmp_path):
        (tmp_path / "b.img").write_bytes(b"\0")
        (tmp_path / "a.img").write_bytes(b"\0")

        artifacts = locate_image_artifacts(tmp_path)

        assert artifacts.disk == tmp_path / "a.img"
        assert artifacts.kernel is None

    def test_kernel_path_resolves_sibling_disk(self, image_dir):
        artifacts = locate_image_artifacts(image_dir / "bzImage")

        assert artifacts.kernel == image_dir / "bzImage"
        assert artifacts.disk == image_dir / "rootfs.ext4"

    def test_qcow2_disk(self, tmp_path):
        disk = tmp_path / "disk.qcow2"
        disk.write_bytes(b"QFI")

        artifacts = locate_image_artifacts(disk)

        assert artifacts.disk == disk
        assert artifacts.disk_format == "qcow2"

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            locate_image_artifacts(tmp_path / "nope")
        with pytest.raises(FileNotFoundError):
            locate_image_artifacts(tmp_path)


def test_generate_instance_id_unique():
    ids = {generate_instance_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("qemu-") for i in ids)


class TestBuildVMCommand:
    def test_command_line(self, harness_config, image_dir):
        harness_config.kernel_cmdline = "quiet"
        harness_config.extra_args = ["-smp", "2"]
        manager = VMManager(harness_config, executor=FakeExecutor())
        instance = make_instance(image_dir)
        instance.image = ImageArtifacts(disk=image_dir / "rootfs.ext4", kernel=image_dir / "bzImage")

        cmd = manager.build_vm_command(instance)

        assert cmd[0] == "qemu-system-x86_64"
        assert cmd[cmd.index("-m") + 1] == "512"
        assert cmd[cmd.index("-kernel") + 1] == str(image_dir / "bzImage")
        assert cmd[cmd.index("-append") + 1] == "console=ttyS0 root=/dev/vda rw quiet"
        drive = cmd[cmd.index("-drive") + 1]
        assert drive.startswith(f"file={image_dir / 'rootfs.ext4'},if=virtio,format=raw")
        assert "snapshot=on" in drive
        assert "hostfwd=tcp:127.0.0.1:2222-:22" in cmd[cmd.index("-nic") + 1]
        assert cmd[cmd.index("-monitor") + 1] == "tcp:127.0.0.1:4444,server,nowait"
        assert cmd[cmd.index("-serial") + 1] == "tcp:127.0.0.1:8000,server,nowait"
        assert "-nographic" in cmd
        assert "-daemonize" not in cmd
        assert cmd[-2:] == ["-smp", "2"]

    def test_no_kernel_no_append(self, harness_config, tmp_path):
        manager = VMManager(harness_config, executor=FakeExecutor())

        cmd = manager.build_vm_command(make_instance(tmp_path))

        assert "-kernel" not in cmd
        assert "-append" not in cmd

    def test_qemu_binary_override(self, tmp_path):
        config = HarnessConfig(project_dir=tmp_path, architecture="aarch64", qemu_binary="/opt/qemu")
        manager = VMManager(config, executor=FakeExecutor())

        cmd = manager.build_vm_command(make_instance(tmp_path))

        assert cmd[0] == "/opt/qemu"
        assert cmd[cmd.index("-machine") + 1] == "virt"


class TestStartInstance:
    def test_successful_launch_and_stop(self, harness_config, image_dir, spawned):
        executor = FakeExecutor(reachable=True)
        manager = VMManager(harness_config, executor=executor)

        async def scenario():
            with patch.object(VMManager, "build_vm_command", sleeping_command):
                instance = await manager.start_instance(image_dir)
            assert instance.state == InstanceState.RUNNING
            assert instance.is_alive
            assert manager.get_instance(instance.id) is instance
            assert set(instance.ports) <= manager.port_allocator.claimed

            await manager.stop_instance(instance)
            # second stop is a no-op
            await manager.stop_instance(instance)
            return instance

        instance = asyncio.run(scenario())

        assert instance.state == InstanceState.STOPPED
        assert instance.process is None
        assert spawned[0].poll() is not None
        assert manager.port_allocator.claimed == set()
        assert manager.list_instances() == []
        log = instance.log_path.read_text()
        assert log.startswith("=== QEMU Instance Log ===")
        assert "=== QEMU Process Terminated ===" in log

    def test_concurrent_launches_get_distinct_ports(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=True))

        async def scenario():
            with patch.object(VMManager, "build_vm_command", sleeping_command):
                instances = await asyncio.gather(
                    *(manager.start_instance(image_dir) for _ in range(3))
                )
            ports = [p for i in instances for p in i.ports]
            await manager.stop_all()
            return ports

        ports = asyncio.run(scenario())

        assert len(ports) == 9
        assert len(set(ports)) == 9
        assert manager.port_allocator.claimed == set()

    def test_port_exhaustion_launches_nothing(self, tmp_path, image_dir):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        busy = sock.getsockname()[1]
        try:
            config = HarnessConfig(project_dir=tmp_path, ssh_ports=PortRange(busy, busy))
            manager = VMManager(config, executor=FakeExecutor())

            with patch("forgetest_mcp.vm_manager.subprocess.Popen") as popen:
                with pytest.raises(PortExhaustedError):
                    asyncio.run(manager.start_instance(image_dir))

            popen.assert_not_called()
            assert manager.port_allocator.claimed == set()
            assert manager.list_instances() == []
        finally:
            sock.close()

    def test_missing_binary_is_launch_failure(self, tmp_path, image_dir):
        config = HarnessConfig(project_dir=tmp_path, qemu_binary="/nonexistent/qemu-system-x86_64")
        manager = VMManager(config, executor=FakeExecutor())

        with pytest.raises(LaunchFailedError):
            asyncio.run(manager.start_instance(image_dir))

        assert manager.port_allocator.claimed == set()
        assert manager.list_instances() == []

    def test_process_exit_during_boot(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=False))

        with patch.object(VMManager, "build_vm_command", lambda self, i: ["true"]):
            with pytest.raises(LaunchFailedError, match="exited"):
                asyncio.run(manager.start_instance(image_dir))

        assert manager.port_allocator.claimed == set()

    def test_boot_timeout_tears_down(self, tmp_path, image_dir, spawned):
        config = HarnessConfig(project_dir=tmp_path, boot_timeout=0.3, boot_poll_interval=0.05)
        executor = FakeExecutor(reachable=False)
        manager = VMManager(config, executor=executor)

        with patch.object(VMManager, "build_vm_command", sleeping_command):
            with pytest.raises(BootTimeoutError):
                asyncio.run(manager.start_instance(image_dir))

        assert executor.probes > 0
        assert spawned[0].poll() is not None
        assert manager.port_allocator.claimed == set()
        assert manager.list_instances() == []


class TestWaitForBoot:
    def test_cancel_before_first_probe(self, harness_config, tmp_path):
        """Cancellation is reported as cancellation, not as a boot timeout."""
        executor = FakeExecutor(reachable=True)
        manager = VMManager(harness_config, executor=executor)
        instance = make_instance(tmp_path)

        async def scenario():
            task = asyncio.create_task(manager.wait_for_boot(instance, timeout=30, interval=10))
            await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return task

        task = asyncio.run(scenario())

        assert task.cancelled()
        assert executor.probes == 0

    def test_timeout(self, harness_config, tmp_path):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=False))

        with pytest.raises(BootTimeoutError) as exc_info:
            asyncio.run(manager.wait_for_boot(make_instance(tmp_path), timeout=0.2, interval=0.05))

        assert exc_info.value.instance_id == "qemu-test"


class TestStopInstance:
    def test_powerdown_sent_over_monitor(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=True))
        received = []

        async def handle(reader, writer):
            received.append(await reader.readline())
            writer.close()

        async def scenario():
            with patch.object(VMManager, "build_vm_command", sleeping_command):
                instance = await manager.start_instance(image_dir)
            server = await asyncio.start_server(handle, "127.0.0.1", instance.monitor_port)
            async with server:
                await manager.stop_instance(instance)
            return instance

        instance = asyncio.run(scenario())

        assert received == [b"system_powerdown\n"]
        assert instance.state == InstanceState.STOPPED

    def test_stop_after_process_exited(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=True))

        async def scenario():
            with patch.object(VMManager, "build_vm_command", sleeping_command):
                instance = await manager.start_instance(image_dir)
            instance.process.kill()
            instance.process.wait()
            await manager.stop_instance(instance)
            return instance

        instance = asyncio.run(scenario())

        assert instance.state == InstanceState.STOPPED
        assert manager.port_allocator.claimed == set()

    def test_stop_never_started(self, harness_config, tmp_path):
        manager = VMManager(harness_config, executor=FakeExecutor())
        instance = make_instance(tmp_path)

        asyncio.run(manager.stop_instance(instance))

        assert instance.state == InstanceState.STOPPED

    def test_kill_all(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=True))

        async def launch():
            with patch.object(VMManager, "build_vm_command", sleeping_command):
                return await manager.start_instance(image_dir)

        instance = asyncio.run(launch())
        manager.kill_all()

        assert instance.process is None
        assert spawned[0].poll() is not None
        assert manager.list_instances() == []


class TestPortRelease:
    """Ports go back to the allocator exactly once per launched instance."""

    def launch(self, manager, image_dir):
        async def start():
            with patch.object(VMManager, "build_vm_command", sleeping_command):
                return await manager.start_instance(image_dir)

        return start()

    def test_repeated_stop_keeps_newer_claims(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=True))

        async def scenario():
            first = await self.launch(manager, image_dir)
            await manager.stop_instance(first)
            second = await self.launch(manager, image_dir)
            await manager.stop_instance(first)
            claimed = set(manager.port_allocator.claimed)
            third = await self.launch(manager, image_dir)
            await manager.stop_all()
            return second, third, claimed

        second, third, claimed = asyncio.run(scenario())

        assert set(second.ports) <= claimed
        assert not set(second.ports) & set(third.ports)
        assert manager.port_allocator.claimed == set()

    def test_stop_unlaunched_instance_keeps_claims(self, harness_config, image_dir, spawned):
        manager = VMManager(harness_config, executor=FakeExecutor(reachable=True))

        async def scenario():
            running = await self.launch(manager, image_dir)
            stray = make_instance(image_dir, "qemu-stray")
            stray.monitor_port, stray.ssh_port, stray.serial_port = running.ports
            await manager.stop_instance(stray)
            claimed = set(manager.port_allocator.claimed)
            await manager.stop_instance(running)
            return running, stray, claimed

        running, stray, claimed = asyncio.run(scenario())

        assert set(running.ports) <= claimed
        assert stray.state == InstanceState.STOPPED
        assert manager.port_allocator.claimed == set()


class LingeringProcess:
    """Popen stand-in that keeps running for a few polls after SIGKILL."""

    pid = 4242
    returncode = None

    def __init__(self, polls_after_kill=5):
        self.killed = False
        self.polls_after_kill = polls_after_kill
        self.waited_while_running = False

    def poll(self):
        if self.killed and self.returncode is None:
            self.polls_after_kill -= 1
            if self.polls_after_kill <= 0:
                self.returncode = -signal.SIGKILL
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            self.waited_while_running = True
        return self.returncode


def test_stop_reaps_without_blocking_loop(harness_config, tmp_path):
    manager = VMManager(harness_config, executor=FakeExecutor())
    instance = make_instance(tmp_path)
    process = LingeringProcess()
    instance.process = process
    instance.state = InstanceState.RUNNING

    def kill(pgid, sig):
        process.killed = True

    async def scenario():
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        await manager.stop_instance(instance)
        task.cancel()
        return ticks

    with patch("forgetest_mcp.vm_manager.os.getpgid", return_value=4242), patch(
        "forgetest_mcp.vm_manager.os.killpg", side_effect=kill
    ) as killpg:
        ticks = asyncio.run(scenario())

    killpg.assert_called_with(4242, signal.SIGKILL)
    assert not process.waited_while_running
    assert ticks > 10
    assert instance.process is None
    assert instance.state == InstanceState.STOPPED
