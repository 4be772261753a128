"""
TCP port allocation for VM monitor, SSH and serial endpoints.
"""
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Optional, Set

from .errors import PortExhaustedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortRange:
    """Inclusive range of host ports."""

    low: int
    high: int

    def __post_init__(self):
        if not (0 < self.low <= 65535 and 0 < self.high <= 65535):
            raise ValueError(f"Port range out of bounds: {self.low}-{self.high}")

    def __str__(self) -> str:
        return f"{self.low}-{self.high}"


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check a port by binding to it and releasing it again.

    Args:
        port: Port to probe
        host: Address to bind on

    Returns:
        True if the bind succeeded
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def find_available_port(low: int, high: int) -> int:
    """Return the first port in [low, high] that can be bound.

    Raises:
        PortExhaustedError: if every port in the range is taken
    """
    for port in range(low, high + 1):
        if is_port_available(port):
            return port
    raise PortExhaustedError(low, high)


class PortAllocator:
    """Hands out ports to concurrently launching instances.

    A port stays claimed from allocation until release, so two launches in
    flight never get the same port even before the VM has bound it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed: Set[int] = set()

    def allocate(self, port_range: PortRange) -> int:
        """Claim the first bindable, unclaimed port in the range.

        Raises:
            PortExhaustedError: if no port is free
        """
        with self._lock:
            for port in range(port_range.low, port_range.high + 1):
                if port in self._claimed:
                    continue
                if is_port_available(port):
                    self._claimed.add(port)
                    logger.debug(f"Allocated port {port} from {port_range}")
                    return port
        raise PortExhaustedError(port_range.low, port_range.high)

    def release(self, port: Optional[int]):
        """Give a port back. Unknown or None ports are ignored."""
        if port is None:
            return
        with self._lock:
            self._claimed.discard(port)

    @property
    def claimed(self) -> Set[int]:
        with self._lock:
            return set(self._claimed)
