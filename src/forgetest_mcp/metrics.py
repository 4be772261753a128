"""
Guest resource metrics gathered over SSH and parsed from plain command output.
"""
import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Dict, Optional

from .errors import HarnessError
from .remote import RemoteExecutor

if TYPE_CHECKING:
    from .vm_manager import VMInstance

logger = logging.getLogger(__name__)

MEMORY_COMMAND = "free -m | grep '^Mem:'"
DISK_COMMAND = "df / | tail -1"
LOAD_COMMAND = "cat /proc/loadavg"
NETWORK_COMMAND = "cat /proc/net/dev"
CPU_COMMAND = "head -1 /proc/stat"


@dataclass
class TestMetrics:
    """Point-in-time resource snapshot of a guest. Unparsed fields stay zero."""

    __test__ = False  # not a pytest test class

    cpu_usage_percent: float = 0.0
    memory_usage_mb: float = 0.0
    memory_usage_percent: float = 0.0
    disk_usage_mb: float = 0.0
    disk_usage_percent: float = 0.0
    network_bytes_sent: int = 0
    network_bytes_recv: int = 0
    load_average_1: float = 0.0
    load_average_5: float = 0.0
    load_average_15: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict) -> "TestMetrics":
        known = TestMetrics.__dataclass_fields__
        return TestMetrics(**{k: v for k, v in data.items() if k in known})


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_memory_output(output: str, metrics: TestMetrics):
    """Parse ``free -m`` "Mem:" line: total used free shared buff/cache available."""
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 3 or fields[0] != "Mem:":
            continue
        total = _to_float(fields[1])
        used = _to_float(fields[2])
        if used is None:
            return
        metrics.memory_usage_mb = used
        if total:
            metrics.memory_usage_percent = used / total * 100
        return


def parse_disk_output(output: str, metrics: TestMetrics):
    """Parse a ``df`` row: filesystem 1K-blocks used available use% mountpoint."""
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return
    fields = lines[-1].split()
    if len(fields) < 5:
        return
    used_kb = _to_float(fields[2])
    if used_kb is not None:
        metrics.disk_usage_mb = used_kb / 1024
    percent = _to_float(fields[4].rstrip("%"))
    if percent is not None:
        metrics.disk_usage_percent = percent


def parse_load_average(output: str, metrics: TestMetrics):
    """Parse load averages from /proc/loadavg or an ``uptime`` line."""
    text = output.strip()
    if "load average:" in text:
        values = text.split("load average:", 1)[1].replace(",", " ").split()
    else:
        values = text.split()
    loads = [_to_float(v) for v in values[:3]]
    for name, value in zip(("load_average_1", "load_average_5", "load_average_15"), loads):
        if value is not None:
            setattr(metrics, name, value)


def parse_network_output(output: str, metrics: TestMetrics):
    """Sum receive/transmit byte counters of non-loopback interfaces in /proc/net/dev."""
    recv = sent = 0
    for line in output.splitlines():
        if ":" not in line:
            continue
        iface, counters = line.split(":", 1)
        if iface.strip() == "lo":
            continue
        fields = counters.split()
        if len(fields) < 9:
            continue
        try:
            recv += int(fields[0])
            sent += int(fields[8])
        except ValueError:
            continue
    metrics.network_bytes_recv = recv
    metrics.network_bytes_sent = sent


def parse_cpu_output(output: str, metrics: TestMetrics):
    """Busy share since boot from the aggregate "cpu" line of /proc/stat."""
    fields = output.split()
    if len(fields) < 5 or fields[0] != "cpu":
        return
    values = [_to_float(v) for v in fields[1:]]
    if any(v is None for v in values):
        return
    total = sum(values)
    idle = values[3] + (values[4] if len(values) > 4 else 0.0)  # idle + iowait
    if total > 0:
        metrics.cpu_usage_percent = (total - idle) / total * 100


class MetricsCollector:
    """Collects TestMetrics from a running guest, best effort."""

    def __init__(
        self,
        executor: RemoteExecutor,
        command_timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.executor = executor
        self.command_timeout = command_timeout
        self.logger = logger or logging.getLogger(__name__)

    async def _run(self, instance: "VMInstance", command: str) -> Optional[str]:
        try:
            result = await self.executor.execute(instance, command, self.command_timeout)
        except HarnessError as e:
            self.logger.debug(f"[{instance.id}] metrics command failed ({command}): {e}")
            return None
        return result.stdout

    async def collect_system_metrics(self, instance: "VMInstance") -> Optional[TestMetrics]:
        """Take a snapshot. Never raises for remote or parse failures.

        Each command runs independently; one failing leaves only its own
        fields at zero.

        Returns:
            TestMetrics, or None if no command produced output
        """
        metrics = TestMetrics()
        collected = False
        parsers = (
            (MEMORY_COMMAND, parse_memory_output),
            (DISK_COMMAND, parse_disk_output),
            (LOAD_COMMAND, parse_load_average),
            (NETWORK_COMMAND, parse_network_output),
            (CPU_COMMAND, parse_cpu_output),
        )
        for command, parse in parsers:
            output = await self._run(instance, command)
            if output is not None:
                parse(output, metrics)
                collected = True
        if not collected:
            self.logger.debug(f"[{instance.id}] no metrics collected")
            return None
        return metrics
