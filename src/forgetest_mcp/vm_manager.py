"""
QEMU instance lifecycle for image testing - launch, boot wait and teardown.
"""

import asyncio
import datetime
import logging
import os
import signal
import subprocess
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Dict, List, Optional, Tuple

from .config import HarnessConfig
from .errors import BootTimeoutError, LaunchFailedError
from .ports import PortAllocator
from .remote import RemoteExecutor

logger = logging.getLogger(__name__)

MONITOR_HOST = "127.0.0.1"
KERNEL_NAMES = ("bzImage", "Image", "zImage", "vmlinux")
PREFERRED_DISK_NAME = "rootfs.ext4"
REAP_TIMEOUT = 5


class InstanceState(str, Enum):
    """Lifecycle of a VM instance."""

    LAUNCHING = "launching"
    BOOTING = "booting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    LAUNCH_FAILED = "launch_failed"


TERMINAL_STATES = (InstanceState.STOPPED, InstanceState.LAUNCH_FAILED)


@dataclass(frozen=True)
class ArchProfile:
    """QEMU launch parameters for one target architecture."""

    qemu_binary: str
    machine: str
    cpu: Optional[str] = None
    console: str = "ttyS0"
    drive_interface: str = "virtio"
    root_device: str = "/dev/vda"
    nic_model: str = "virtio-net-pci"
    extra_args: Tuple[str, ...] = ()


DEFAULT_ARCH = "x86_64"

ARCH_PROFILES: Dict[str, ArchProfile] = {
    "x86_64": ArchProfile("qemu-system-x86_64", "pc", cpu="max"),
    "i386": ArchProfile("qemu-system-i386", "pc", cpu="max"),
    "aarch64": ArchProfile("qemu-system-aarch64", "virt", cpu="cortex-a57", console="ttyAMA0"),
    "arm": ArchProfile(
        "qemu-system-arm",
        "versatilepb",
        console="ttyAMA0",
        drive_interface="scsi",
        root_device="/dev/sda",
        nic_model="smc91c111",
    ),
    "armv7": ArchProfile("qemu-system-arm", "virt", cpu="cortex-a15", console="ttyAMA0"),
    "armv5": ArchProfile(
        "qemu-system-arm",
        "versatilepb",
        console="ttyAMA0",
        drive_interface="scsi",
        root_device="/dev/sda",
        nic_model="smc91c111",
    ),
    "riscv64": ArchProfile("qemu-system-riscv64", "virt"),
    "mips": ArchProfile(
        "qemu-system-mips", "malta", drive_interface="ide", root_device="/dev/sda", nic_model="pcnet"
    ),
}


def get_arch_profile(architecture: Optional[str]) -> ArchProfile:
    """Look up launch parameters, falling back to the generic x86_64 machine.

    Unknown architectures are not an error here; validating the target is the
    build's job, the harness just tries to boot what it was given.
    """
    profile = ARCH_PROFILES.get(architecture or DEFAULT_ARCH)
    if profile is None:
        logger.warning(
            f"No launch profile for architecture '{architecture}', using {DEFAULT_ARCH} defaults"
        )
        profile = ARCH_PROFILES[DEFAULT_ARCH]
    return profile


@dataclass(frozen=True)
class ImageArtifacts:
    """Disk image plus optional kernel to boot it with."""

    disk: Path
    kernel: Optional[Path] = None

    @property
    def disk_format(self) -> str:
        return "qcow2" if self.disk.suffix == ".qcow2" else "raw"


def _find_kernel(directory: Path, exclude: Optional[Path] = None) -> Optional[Path]:
    for name in KERNEL_NAMES:
        candidate = directory / name
        if candidate.is_file() and candidate != exclude:
            return candidate
    return None


def _find_disk(directory: Path) -> Optional[Path]:
    preferred = directory / PREFERRED_DISK_NAME
    if preferred.is_file():
        return preferred
    images = sorted(p for p in directory.glob("*.img") if p.is_file())
    return images[0] if images else None


def locate_image_artifacts(image_path: Path) -> ImageArtifacts:
    """Resolve an image path (file or artifacts directory) into disk + kernel.

    Args:
        image_path: Disk image, kernel image, or build artifacts directory

    Returns:
        ImageArtifacts

    Raises:
        FileNotFoundError: if the path or a bootable disk image is missing
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image path does not exist: {path}")

    if path.is_dir():
        disk = _find_disk(path)
        if disk is None:
            raise FileNotFoundError(f"No suitable image found in {path}")
        return ImageArtifacts(disk=disk, kernel=_find_kernel(path))

    if path.name in KERNEL_NAMES:
        disk = _find_disk(path.parent)
        if disk is None:
            raise FileNotFoundError(f"Kernel {path} has no root filesystem image next to it")
        return ImageArtifacts(disk=disk, kernel=path)

    return ImageArtifacts(disk=path, kernel=_find_kernel(path.parent, exclude=path))


def generate_instance_id() -> str:
    """Unique ID, e.g. "qemu-20251115103045-a3f9d2c1"."""
    timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    return f"qemu-{timestamp}-{uuid.uuid4().hex[:8]}"


@dataclass(eq=False)
class VMInstance:
    """A QEMU process under test.

    Only VMManager mutates an instance. Once ``process`` is None after a stop
    the instance is terminal and must not be reused.
    """

    id: str
    image: ImageArtifacts
    monitor_port: int
    ssh_port: int
    serial_port: int
    log_path: Path
    start_time: datetime.datetime = field(default_factory=datetime.datetime.now)
    state: InstanceState = InstanceState.LAUNCHING
    command: List[str] = field(default_factory=list)
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    log_file: Optional[IO[str]] = field(default=None, repr=False)
    # True while the ports are claimed in the manager's allocator for this instance
    ports_claimed: bool = field(default=False, repr=False)

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def ports(self) -> Tuple[int, int, int]:
        return self.monitor_port, self.ssh_port, self.serial_port

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "pid": self.process.pid if self.process else None,
            "ssh_port": self.ssh_port,
            "monitor_port": self.monitor_port,
            "serial_port": self.serial_port,
            "disk": str(self.image.disk),
            "kernel": str(self.image.kernel) if self.image.kernel else None,
            "log_path": str(self.log_path),
            "start_time": self.start_time.isoformat(),
        }


class VMManager:
    """Launches, tracks and tears down QEMU instances."""

    def __init__(
        self,
        config: HarnessConfig,
        executor: Optional[RemoteExecutor] = None,
        port_allocator: Optional[PortAllocator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize VM manager.

        Args:
            config: Harness configuration
            executor: Remote executor used for the boot probe
            port_allocator: Shared allocator (default: one per manager)
            logger: Logger to use (default: module logger)
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.executor = executor or RemoteExecutor(
            credentials=config.credentials,
            connect_timeout=config.ssh_connect_timeout,
            logger=self.logger,
        )
        self.port_allocator = port_allocator or PortAllocator()
        self.profile = get_arch_profile(config.architecture)
        self._instances: Dict[str, VMInstance] = {}

    @property
    def qemu_binary(self) -> str:
        return self.config.qemu_binary or self.profile.qemu_binary

    def check_qemu(self) -> Tuple[bool, str]:
        """Check that the QEMU binary for the target architecture is usable.

        Returns:
            Tuple of (is_available, version line or error message)
        """
        try:
            result = subprocess.run(
                [self.qemu_binary, "--version"], capture_output=True, text=True, timeout=5
            )
            if result.returncode == 0:
                version_line = result.stdout.splitlines()[0] if result.stdout else ""
                return True, version_line
            return False, f"QEMU binary '{self.qemu_binary}' exists but returned error"
        except FileNotFoundError:
            return False, f"QEMU binary '{self.qemu_binary}' not found in PATH"
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            return False, f"Error checking QEMU: {str(e)}"

    def build_vm_command(self, instance: VMInstance) -> List[str]:
        """Build the QEMU command line for an instance.

        Args:
            instance: Instance with ports already assigned

        Returns:
            argv list
        """
        profile = self.profile
        image = instance.image

        cmd = [self.qemu_binary, "-machine", profile.machine]
        if profile.cpu:
            cmd.extend(["-cpu", profile.cpu])
        cmd.extend(["-m", str(self.config.memory_mb)])

        if image.kernel:
            append = f"console={profile.console} root={profile.root_device} rw"
            if self.config.kernel_cmdline:
                append += f" {self.config.kernel_cmdline}"
            cmd.extend(["-kernel", str(image.kernel), "-append", append])

        # snapshot=on keeps the built image pristine across runs
        cmd.extend([
            "-drive",
            f"file={image.disk},if={profile.drive_interface},format={image.disk_format},snapshot=on",
            "-nic",
            f"user,model={profile.nic_model},hostfwd=tcp:127.0.0.1:{instance.ssh_port}-:22",
            "-monitor",
            f"tcp:{MONITOR_HOST}:{instance.monitor_port},server,nowait",
            "-serial",
            f"tcp:{MONITOR_HOST}:{instance.serial_port},server,nowait",
            "-nographic",
        ])
        cmd.extend(profile.extra_args)
        cmd.extend(self.config.extra_args)
        return cmd

    def list_instances(self) -> List[VMInstance]:
        return list(self._instances.values())

    def get_instance(self, instance_id: str) -> Optional[VMInstance]:
        return self._instances.get(instance_id)

    def _allocate_ports(self) -> Tuple[int, int, int]:
        allocated: List[int] = []
        try:
            for port_range in (
                self.config.monitor_ports,
                self.config.ssh_ports,
                self.config.serial_ports,
            ):
                allocated.append(self.port_allocator.allocate(port_range))
        except Exception:
            for port in allocated:
                self.port_allocator.release(port)
            raise
        monitor_port, ssh_port, serial_port = allocated
        return monitor_port, ssh_port, serial_port

    def _open_log(self, instance: VMInstance) -> IO[str]:
        instance.log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(instance.log_path, "w", encoding="utf-8", buffering=1)
        log_file.write("=== QEMU Instance Log ===\n")
        log_file.write(f"Instance: {instance.id}\n")
        log_file.write(f"Started: {instance.start_time.isoformat()}\n")
        log_file.write(f"Command: {' '.join(instance.command)}\n")
        log_file.write("=" * 80 + "\n\n")
        log_file.flush()
        return log_file

    async def start_instance(self, image_path: Path) -> VMInstance:
        """Launch a VM from a built image and wait until it accepts SSH.

        Args:
            image_path: Disk image or artifacts directory

        Returns:
            VMInstance in RUNNING state

        Raises:
            FileNotFoundError: image missing
            PortExhaustedError: a port range has no free port
            LaunchFailedError: QEMU could not be started or died while booting
            BootTimeoutError: guest never became reachable
        """
        image = locate_image_artifacts(image_path)
        instance_id = generate_instance_id()
        monitor_port, ssh_port, serial_port = self._allocate_ports()

        instance = VMInstance(
            id=instance_id,
            image=image,
            monitor_port=monitor_port,
            ssh_port=ssh_port,
            serial_port=serial_port,
            log_path=self.config.logs_dir / f"qemu-{instance_id}.log",
            ports_claimed=True,
        )
        instance.command = self.build_vm_command(instance)
        self._instances[instance.id] = instance

        try:
            try:
                instance.log_file = self._open_log(instance)
            except OSError as e:
                raise LaunchFailedError(f"failed to create log file {instance.log_path}: {e}") from e

            self.logger.info(
                f"Starting QEMU instance {instance.id} with command: {' '.join(instance.command)}"
            )
            try:
                instance.process = subprocess.Popen(
                    instance.command,
                    stdin=subprocess.DEVNULL,
                    stdout=instance.log_file,
                    stderr=subprocess.STDOUT,
                    close_fds=True,
                    start_new_session=True,  # own process group, killed as a unit
                )
            except OSError as e:
                raise LaunchFailedError(f"failed to start QEMU: {e}") from e

            instance.state = InstanceState.BOOTING
            await self.wait_for_boot(instance)
        except BaseException as e:
            self.logger.error(f"✗ QEMU instance {instance.id} failed to launch: {e}")
            instance.state = InstanceState.LAUNCH_FAILED
            self._teardown(instance)
            raise

        instance.state = InstanceState.RUNNING
        self.logger.info(
            f"✓ QEMU instance {instance.id} started (SSH: localhost:{instance.ssh_port})"
        )
        return instance

    async def wait_for_boot(
        self,
        instance: VMInstance,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ):
        """Poll the guest's SSH endpoint until it accepts a login.

        The first probe happens one interval after the call. Cancelling the
        calling task stops the wait immediately with CancelledError.

        Raises:
            BootTimeoutError: not reachable within ``timeout``
            LaunchFailedError: the QEMU process exited while booting
        """
        timeout = self.config.boot_timeout if timeout is None else timeout
        interval = self.config.boot_poll_interval if interval is None else interval

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BootTimeoutError(instance.id, timeout)
            await asyncio.sleep(min(interval, remaining))

            if instance.process is not None and instance.process.poll() is not None:
                raise LaunchFailedError(
                    f"QEMU exited with code {instance.process.returncode} while booting "
                    f"(see {instance.log_path})"
                )

            if await self.executor.probe(instance):
                return

    async def send_monitor_command(self, instance: VMInstance, command: str):
        """Send one HMP command over the instance's monitor port.

        Raises:
            OSError: monitor not reachable
            asyncio.TimeoutError: monitor did not accept the connection in time
        """
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(MONITOR_HOST, instance.monitor_port),
            timeout=self.config.monitor_timeout,
        )
        try:
            writer.write(f"{command}\n".encode())
            await writer.drain()
            # Give QEMU a moment to process the command before hanging up
            await asyncio.sleep(0.1)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _wait_for_exit(self, process: subprocess.Popen, grace: float):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        while process.poll() is None and loop.time() < deadline:
            await asyncio.sleep(0.1)

    async def stop_instance(self, instance: VMInstance):
        """Stop an instance: power down via monitor, then SIGKILL.

        Safe to call repeatedly and on instances whose process already exited.
        The process is reaped without blocking the event loop; if the caller
        is cancelled the forced kill, reap and log close still run.
        """
        process = instance.process
        if process is None:
            if instance.state not in TERMINAL_STATES:
                self._teardown(instance)
            return

        self.logger.info(f"Stopping QEMU instance {instance.id}")
        instance.state = InstanceState.STOPPING

        try:
            if instance.is_alive:
                try:
                    await self.send_monitor_command(instance, "system_powerdown")
                except (OSError, asyncio.TimeoutError) as e:
                    self.logger.warning(f"Graceful shutdown failed, force killing: {e}")
                await self._wait_for_exit(process, self.config.shutdown_grace_period)
            self._kill(process)
            await self._wait_for_exit(process, REAP_TIMEOUT)
        finally:
            self._teardown(instance)

        self.logger.info(f"QEMU instance {instance.id} stopped")

    def _kill(self, process: subprocess.Popen):
        """SIGKILL the process group if the process is still running."""
        if process.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        except OSError as e:
            self.logger.warning(f"Failed to kill QEMU process {process.pid}: {e}")

    def _teardown(self, instance: VMInstance):
        """Kill, reap, close log, release ports. Never raises."""
        process = instance.process
        try:
            if process is not None:
                self._kill(process)
                try:
                    process.wait(timeout=REAP_TIMEOUT)
                except subprocess.TimeoutExpired:
                    self.logger.warning(f"QEMU process {process.pid} did not exit after SIGKILL")
                instance.process = None
        finally:
            if instance.log_file is not None:
                try:
                    instance.log_file.write("\n\n=== QEMU Process Terminated ===\n")
                    instance.log_file.write(f"Ended: {datetime.datetime.now().isoformat()}\n")
                except (OSError, ValueError):
                    pass
                try:
                    instance.log_file.close()
                except OSError as e:
                    self.logger.warning(f"Failed to close log for {instance.id}: {e}")
                instance.log_file = None

            # A later instance may hold the same ports once they are released
            if instance.ports_claimed:
                for port in instance.ports:
                    self.port_allocator.release(port)
                instance.ports_claimed = False

            if instance.state != InstanceState.LAUNCH_FAILED:
                instance.state = InstanceState.STOPPED
            self._instances.pop(instance.id, None)

    async def stop_all(self):
        """Stop every tracked instance concurrently."""
        instances = self.list_instances()
        if instances:
            await asyncio.gather(*(self.stop_instance(i) for i in instances))

    def kill_all(self):
        """Force-kill every tracked instance without the graceful step (exit hook)."""
        for instance in self.list_instances():
            self._teardown(instance)
