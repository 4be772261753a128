"""
Remote command execution on guest VMs over SSH (paramiko).
"""
import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError, SSHException

from .config import GuestCredentials
from .errors import CommandFailedError, CommandTimeoutError, RemoteConnectionError

if TYPE_CHECKING:
    from .vm_manager import VMInstance

logger = logging.getLogger(__name__)

GUEST_HOST = "localhost"
READ_CHUNK = 4096


@dataclass
class CommandResult:
    """Captured output of a completed remote command."""

    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def _drain(read: Callable[[int], bytes], chunks: List[bytes]):
    """Read a channel stream until EOF, appending as data arrives."""
    while True:
        data = read(READ_CHUNK)
        if not data:
            return
        chunks.append(data)


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _close_abandoned_client(future: "asyncio.Future[paramiko.SSHClient]"):
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()
    logger.debug("Closed SSH client opened for a cancelled caller")


class RemoteExecutor:
    """Runs shell commands inside a guest over its forwarded SSH port."""

    def __init__(
        self,
        credentials: Optional[GuestCredentials] = None,
        connect_timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize executor.

        Args:
            credentials: Guest login (default: root with empty password)
            connect_timeout: Seconds allowed for TCP connect, banner and auth
            logger: Logger to use (default: module logger)
        """
        self.credentials = credentials or GuestCredentials()
        self.connect_timeout = connect_timeout
        self.logger = logger or logging.getLogger(__name__)

        paramiko_logger = logging.getLogger("paramiko")
        paramiko_logger.setLevel(logging.WARNING)

        if not self.credentials.password and not self.credentials.key_file:
            self.logger.warning(
                f"Guest SSH uses user '{self.credentials.username}' with an empty password "
                "and no host key verification; only use with local throwaway VMs"
            )

    def _open_client(self, port: int) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # Guests are regenerated on every build, a known_hosts entry would be stale.
        client.set_missing_host_key_policy(paramiko.MissingHostKeyPolicy())

        creds = self.credentials
        try:
            try:
                client.connect(
                    hostname=GUEST_HOST,
                    port=port,
                    username=creds.username,
                    password=creds.password,
                    key_filename=str(creds.key_file) if creds.key_file else None,
                    timeout=self.connect_timeout,
                    banner_timeout=self.connect_timeout,
                    auth_timeout=self.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except paramiko.AuthenticationException:
                # Passwordless accounts on minimal images only accept "none" auth.
                transport = client.get_transport()
                if creds.password or creds.key_file or transport is None:
                    raise
                transport.auth_none(creds.username)
        except (NoValidConnectionsError, SSHException, EOFError, socket.timeout, OSError) as e:
            client.close()
            raise RemoteConnectionError(
                f"failed to connect to SSH on {GUEST_HOST}:{port}: {e}"
            ) from e

        return client

    async def connect(self, instance: "VMInstance") -> paramiko.SSHClient:
        """Open an authenticated SSH client to the instance.

        If the caller is cancelled while the connect is in flight, the client
        the worker thread eventually returns is closed instead of leaked.

        Raises:
            RemoteConnectionError: if the guest is not (yet) accepting logins
        """
        opening = asyncio.ensure_future(asyncio.to_thread(self._open_client, instance.ssh_port))
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(_close_abandoned_client)
            raise

    async def probe(self, instance: "VMInstance") -> bool:
        """Check whether the guest accepts an SSH login right now."""
        try:
            client = await self.connect(instance)
        except RemoteConnectionError as e:
            self.logger.debug(f"Instance {instance.id} not reachable yet: {e}")
            return False
        client.close()
        return True

    @staticmethod
    def _start_command(client: paramiko.SSHClient, command: str, timeout: float) -> paramiko.Channel:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise SSHException("SSH session not active")
        channel = transport.open_session(timeout=timeout)
        channel.exec_command(command)
        return channel

    async def execute(self, instance: "VMInstance", command: str, timeout: float) -> CommandResult:
        """Execute a command in the guest.

        stdout and stderr are drained by two independent readers so neither
        stream can stall the other. The whole run (including the exit status)
        races against ``timeout``.

        Args:
            instance: Running instance
            command: Shell command line
            timeout: Seconds before the session is killed

        Returns:
            CommandResult with exit status 0

        Raises:
            RemoteConnectionError: if no SSH session could be opened
            CommandTimeoutError: on timeout, carrying the output captured so far
            CommandFailedError: on non-zero exit status or session errors
        """
        self.logger.debug(f"[{instance.id}] $ {command}")
        client = await self.connect(instance)
        channel: Optional[paramiko.Channel] = None
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []

        try:
            try:
                channel = await asyncio.to_thread(
                    self._start_command, client, command, self.connect_timeout
                )
            except SSHException as e:
                raise CommandFailedError(command, f"failed to start command: {e}") from e

            completion = asyncio.gather(
                asyncio.to_thread(_drain, channel.recv, stdout_chunks),
                asyncio.to_thread(_drain, channel.recv_stderr, stderr_chunks),
                asyncio.to_thread(channel.recv_exit_status),
            )
            try:
                _, _, exit_status = await asyncio.wait_for(completion, timeout)
            except asyncio.TimeoutError:
                # Closing the channel tears down the remote session and its process.
                channel.close()
                stdout = _decode(stdout_chunks)
                self.logger.warning(
                    f"[{instance.id}] command timed out after {timeout:g}s "
                    f"({len(stdout)} bytes of output kept): {command}"
                )
                raise CommandTimeoutError(command, timeout, stdout, _decode(stderr_chunks))

            result = CommandResult(
                stdout=_decode(stdout_chunks),
                stderr=_decode(stderr_chunks),
                exit_status=exit_status,
            )
            if not result.ok:
                raise CommandFailedError(
                    command,
                    f"exit status {exit_status}",
                    exit_status=exit_status,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            return result
        finally:
            if channel is not None:
                channel.close()
            client.close()
