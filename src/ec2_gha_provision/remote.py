"""Command execution on the host that receives the runner."""
import io
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass

import invoke
import paramiko.ssh_exception
from fabric import Connection
from invoke.exceptions import CommandTimedOut

from ec2_gha_provision.defaults import COMMAND_TIMEOUT, SSH_CONNECT_TIMEOUT
from ec2_gha_provision.errors import RemoteExecutionError
from ec2_gha_provision.log import redact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Exit status and combined output of one command."""

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.output.strip().splitlines()[-lines:])


class RemoteHost(ABC):
    """Runs shell commands on a target host.

    Implementations return a :class:`CommandResult` for every command that
    ran, whatever its exit status, and raise :class:`RemoteExecutionError`
    only when the transport itself fails.
    """

    address: str = ""

    @abstractmethod
    def run(self, command: str, stdin: str = None, timeout: int = None,
            secrets=()) -> CommandResult:
        """Run ``command`` and return its result.

        Parameters
        ----------
        command : str
            Shell command line.
        stdin : str, optional
            Text fed to the command's standard input.
        timeout : int, optional
            Seconds before the command is abandoned.
        secrets : iterable of str
            Values masked when the command is logged.

        """

    def run_script(self, body: str, args=(), timeout: int = None, secrets=()) -> CommandResult:
        """Run a script body with positional arguments through ``bash -s``."""
        command = "bash -s --"
        if args:
            command += " " + " ".join(shlex.quote(str(arg)) for arg in args)
        return self.run(command, stdin=body, timeout=timeout, secrets=secrets)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _stdin(text: str):
    return io.StringIO(text) if text is not None else False


def _to_result(result) -> CommandResult:
    return CommandResult(result.return_code, (result.stdout or "") + (result.stderr or ""))


class SSHGateway(RemoteHost):
    """Runs commands over SSH with a fabric connection.

    Parameters
    ----------
    host : str
        Address of the target host.
    user : str
        Login user, also the account that owns the runner installation.
    key_filename : str
        Private key file. Falls back to the SSH agent and default keys.
    connect_timeout : int
        Seconds to wait for the TCP/SSH handshake.
    connection : fabric.Connection, optional
        Pre-built connection, mostly for tests.

    """

    def __init__(self, host: str, user: str = "ubuntu", key_filename: str = "",
                 connect_timeout: int = SSH_CONNECT_TIMEOUT, connection: Connection = None):
        self.address = host
        self.user = user
        if connection is None:
            connect_kwargs = {"key_filename": key_filename} if key_filename else {}
            connection = Connection(
                host=host,
                user=user,
                connect_timeout=connect_timeout,
                connect_kwargs=connect_kwargs,
            )
        self._connection = connection

    def run(self, command: str, stdin: str = None, timeout: int = None,
            secrets=()) -> CommandResult:
        logger.debug("%s@%s $ %s", self.user, self.address, redact(command, secrets))
        try:
            result = self._connection.run(
                command,
                warn=True,
                hide=True,
                in_stream=_stdin(stdin),
                timeout=timeout or COMMAND_TIMEOUT,
            )
        except CommandTimedOut as exc:
            raise RemoteExecutionError(
                f"Command timed out on {self.address} after {exc.timeout}s: "
                f"{redact(command, secrets)}"
            ) from exc
        # OSError covers refused connections, timeouts and unresolvable names
        except (OSError, paramiko.ssh_exception.SSHException) as exc:
            raise RemoteExecutionError(f"Unable to SSH into {self.user}@{self.address}: {exc}") from exc
        return _to_result(result)

    def close(self):
        self._connection.close()


class LocalGateway(RemoteHost):
    """Runs commands on the machine this process runs on."""

    address = "localhost"

    def run(self, command: str, stdin: str = None, timeout: int = None,
            secrets=()) -> CommandResult:
        logger.debug("local $ %s", redact(command, secrets))
        try:
            result = invoke.run(
                command,
                warn=True,
                hide=True,
                in_stream=_stdin(stdin),
                timeout=timeout or COMMAND_TIMEOUT,
            )
        except CommandTimedOut as exc:
            raise RemoteExecutionError(
                f"Command timed out after {exc.timeout}s: {redact(command, secrets)}"
            ) from exc
        return _to_result(result)
