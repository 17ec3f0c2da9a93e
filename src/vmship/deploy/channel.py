"""Remote execution channels used to drive the target host."""

import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from vmship.deploy.models import CommandResult
from vmship.utils.errors import ChannelError, ChannelTimeoutError, ErrorContext
from vmship.utils.logging import get_logger

logger = get_logger(__name__)

# Exit status ssh itself uses for connection and authentication errors
SSH_CONNECTION_FAILURE = 255


class RemoteChannel(ABC):
    """Runs shell commands on a remote host."""

    @abstractmethod
    def run_commands(
        self,
        host: str,
        commands: Sequence[str],
        timeout: Optional[float] = None
    ) -> List[CommandResult]:
        """Run commands in order on host.

        Execution stops at the first command that exits non-zero; commands
        after it are returned with ``exit_code=None``.

        Args:
            host: Target host name or address
            commands: Shell commands
            timeout: Seconds allowed per command

        Returns:
            One CommandResult per command

        Raises:
            ChannelTimeoutError: If a command exceeds the timeout
            ChannelError: If the host cannot be reached
        """
        pass

    def run(self, host: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a single command."""
        return self.run_commands(host, [command], timeout=timeout)[0]


class SSHChannel(RemoteChannel):
    """Runs commands through the system ``ssh`` client in batch mode."""

    def __init__(
        self,
        user: Optional[str] = None,
        port: Optional[int] = None,
        identity_file: Optional[str] = None,
        options: Sequence[str] = (),
        connect_timeout: int = 10,
        ssh_binary: str = "ssh"
    ):
        """
        Initialize SSHChannel.

        Args:
            user: Remote user (default: ssh configuration)
            port: Remote port
            identity_file: Private key path (``~`` is expanded)
            options: Extra ``-o`` options, e.g. ``StrictHostKeyChecking=accept-new``
            connect_timeout: Seconds ssh waits for the TCP connection
            ssh_binary: ssh executable
        """
        self.user = user
        self.port = port
        self.identity_file = identity_file
        self.options = list(options)
        self.connect_timeout = connect_timeout
        self.ssh_binary = ssh_binary

    def build_command(self, host: str, command: str) -> List[str]:
        """Build the argument vector for one remote command."""
        argv = [self.ssh_binary, "-o", "BatchMode=yes", "-o", f"ConnectTimeout={self.connect_timeout}"]
        if self.port:
            argv.extend(["-p", str(self.port)])
        if self.identity_file:
            argv.extend(["-i", os.path.expanduser(self.identity_file)])
        for option in self.options:
            argv.extend(["-o", option])

        remote = f"{self.user}@{host}" if self.user else host
        # ssh joins everything after the host with spaces and hands it to the
        # remote login shell, so the command travels as one quoted word
        argv.extend([remote, f"sh -lc {shlex.quote(command)}"])
        return argv

    def run_commands(
        self,
        host: str,
        commands: Sequence[str],
        timeout: Optional[float] = None
    ) -> List[CommandResult]:
        results: List[CommandResult] = []
        failed = False

        for command in commands:
            if failed:
                results.append(CommandResult(command=command))
                continue

            logger.debug(f"Running on {host}: {command}", extra={'host': host})
            started = time.monotonic()
            try:
                completed = subprocess.run(
                    self.build_command(host, command),
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise ChannelTimeoutError(
                    f"Command on {host} did not finish within {timeout}s: {command}",
                    context=ErrorContext(host=host, operation=command),
                    cause=e,
                )
            except OSError as e:
                raise ChannelError(
                    f"Failed to start ssh for {host}: {e}",
                    context=ErrorContext(host=host, operation=command),
                    cause=e,
                    suggestions=["Check that an ssh client is installed and on PATH"],
                )

            if completed.returncode == SSH_CONNECTION_FAILURE:
                raise ChannelError(
                    f"SSH connection to {host} failed: {completed.stderr.strip()}",
                    context=ErrorContext(host=host, operation=command),
                    suggestions=[
                        "Verify the host is reachable and accepts key-based login",
                        "Check the ssh user and identity_file settings",
                    ],
                )

            result = CommandResult(
                command=command,
                exit_code=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
                duration=time.monotonic() - started,
            )
            results.append(result)
            failed = not result.succeeded

        return results
