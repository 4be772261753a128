"""
Exceptions raised by the VM test harness.

Cancellation is not part of this hierarchy: callers cancel by cancelling the
asyncio task, and the harness lets ``asyncio.CancelledError`` propagate after
releasing whatever it was holding.
"""
from typing import Optional


class HarnessError(Exception):
    """Base class for all harness errors."""


class PortExhaustedError(HarnessError):
    """No free TCP port in the requested range."""

    def __init__(self, low: int, high: int):
        super().__init__(f"no available ports in range {low}-{high}")
        self.low = low
        self.high = high


class LaunchFailedError(HarnessError):
    """The VM process could not be started."""


class BootTimeoutError(HarnessError):
    """The guest never became reachable within the boot bound."""

    def __init__(self, instance_id: str, timeout: float):
        super().__init__(f"timeout waiting for boot of {instance_id} after {timeout:.0f}s")
        self.instance_id = instance_id
        self.timeout = timeout


class RemoteConnectionError(HarnessError):
    """The remote shell could not be reached (guest not listening yet)."""


class CommandTimeoutError(HarnessError):
    """A remote command ran past its bound.

    Whatever the command printed before the cut is kept on the exception.
    """

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        super().__init__(f"command timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr


class CommandFailedError(HarnessError):
    """A remote command exited non-zero or could not be run."""

    def __init__(
        self,
        command: str,
        message: str,
        exit_status: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(f"command failed: {message}")
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class ResultsNotFoundError(HarnessError):
    """No stored result set exists for a key. Expected on a first run."""


class SerializationError(HarnessError):
    """Result set could not be written or read back."""
