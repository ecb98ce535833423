"""Connection provider and execution channels for hostplay.

A Channel is an authenticated command/file channel to one host. Channels
are opened once per host and reused by every task of that host:

- SSHChannel: asyncssh connection with SFTP for file transfer
- LocalChannel: subprocesses and local files, used for ``connection: local``
  hosts and for the shared controller channel

ConnectionProvider.session() is the scoped acquisition used by the
executor; it always closes the channel when the host's tasks are done.
"""

import asyncio
import hashlib
import logging
import os
import shlex
import stat as stat_module
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

import asyncssh

from .exceptions import AuthenticationError, ConnectionError, ErrorTypes
from .logging import TRACE
from .types import HostConfig

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 300


@dataclass
class CommandResult:
    """Outcome of one command on a channel."""

    rc: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.rc == 0


def missing_stat() -> dict[str, Any]:
    return {"exists": False}


class Channel(ABC):
    """Command and file channel to a single host."""

    name: str

    @property
    def is_local(self) -> bool:
        return False

    @abstractmethod
    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell command and capture its output.

        A non-zero exit status is returned, not raised. A broken channel
        raises ConnectionError.
        """

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """Read a whole file. Raises FileNotFoundError if missing."""

    @abstractmethod
    async def write_file(self, path: str, content: bytes, mode: int | None = None) -> None:
        """Create or replace a file."""

    @abstractmethod
    async def stat(self, path: str) -> dict[str, Any]:
        """Describe a path.

        Returns:
            {"exists": False} for a missing path, otherwise a dict with
            exists, isdir, size, mode (octal string), mtime and checksum
            (sha256 hex digest, None for directories).
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the channel."""


class LocalChannel(Channel):
    """Channel running commands and file operations on the controller.

    Example:
        channel = LocalChannel()
        result = await channel.run("uname -r")
        print(result.stdout)
    """

    def __init__(self, name: str = "controller", command_timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
        self.name = name
        self.command_timeout = command_timeout

    @property
    def is_local(self) -> bool:
        return True

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
    ) -> CommandResult:
        timeout = timeout or self.command_timeout
        logger.log(TRACE, f"[{self.name}] local: {command}")

        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin.encode() if stdin else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Command timed out after {timeout}s: {command[:50]}")
            return CommandResult(rc=-1, stderr=f"Command timed out after {timeout}s")

        return CommandResult(
            rc=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def read_file(self, path: str) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    async def write_file(self, path: str, content: bytes, mode: int | None = None) -> None:
        def _write() -> None:
            target = Path(path)
            target.write_bytes(content)
            if mode is not None:
                target.chmod(mode)

        await asyncio.to_thread(_write)

    async def stat(self, path: str) -> dict[str, Any]:
        return await asyncio.to_thread(local_stat, path)

    async def close(self) -> None:
        pass


def local_stat(path: str) -> dict[str, Any]:
    """Stat a path on the controller, including its sha256 checksum."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return missing_stat()

    isdir = stat_module.S_ISDIR(st.st_mode)
    return {
        "exists": True,
        "isdir": isdir,
        "size": st.st_size,
        "mode": oct(stat_module.S_IMODE(st.st_mode)),
        "mtime": int(st.st_mtime),
        "checksum": None if isdir else hashlib.sha256(Path(path).read_bytes()).hexdigest(),
    }


@dataclass
class SSHConfig:
    """SSH connection options for one host.

    Attributes:
        hostname: Address to connect to
        port: SSH port
        username: Login user
        password: Password (optional)
        client_keys: Private key paths (optional)
        known_hosts: known_hosts path; None uses asyncssh's default
        host_key_checking: False disables host key verification
        connect_timeout: Connection timeout in seconds
        keepalive_interval: Keepalive interval (0 to disable)
    """

    hostname: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    client_keys: list[str] | None = None
    known_hosts: str | None = None
    host_key_checking: bool = True
    connect_timeout: float = 30.0
    keepalive_interval: float = 30.0

    @classmethod
    def from_host(cls, host: HostConfig, **options: Any) -> "SSHConfig":
        keys = [str(Path(host.key_file).expanduser())] if host.key_file else None
        return cls(
            hostname=host.address,
            port=host.port,
            username=host.user or None,
            password=host.password,
            client_keys=keys,
            **options,
        )

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.hostname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }
        if self.username:
            options["username"] = self.username
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if not self.host_key_checking:
            options["known_hosts"] = None
        elif self.known_hosts:
            options["known_hosts"] = self.known_hosts
        return options


class SSHChannel(Channel):
    """Channel to a remote host over asyncssh.

    Example:
        channel = SSHChannel("web01", SSHConfig(hostname="10.0.0.5", username="deploy"))
        await channel.connect()
        result = await channel.run("uptime")
        await channel.close()
    """

    def __init__(
        self,
        name: str,
        config: SSHConfig,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.name = name
        self.config = config
        self.command_timeout = command_timeout
        self._conn: asyncssh.SSHClientConnection | None = None

    async def connect(self) -> None:
        """Open the SSH connection.

        Raises:
            AuthenticationError: The host rejected the credentials
            ConnectionError: The host is unreachable or timed out
        """
        target = f"{self.config.hostname}:{self.config.port}"
        logger.debug(f"[{self.name}] Connecting to {target}")
        try:
            self._conn = await asyncssh.connect(**self.config.to_asyncssh_options())
        except asyncssh.PermissionDenied as e:
            raise AuthenticationError(f"Authentication failed for {target}: {e}", self.name) from e
        except asyncio.TimeoutError as e:
            raise ConnectionError(
                f"Connection to {target} timed out", self.name, ErrorTypes.CONNECTION_TIMEOUT
            ) from e
        except ConnectionRefusedError as e:
            raise ConnectionError(
                f"Connection to {target} refused", self.name, ErrorTypes.CONNECTION_REFUSED
            ) from e
        except (OSError, asyncssh.Error) as e:
            raise ConnectionError(f"Cannot connect to {target}: {e}", self.name) from e
        logger.info(f"[{self.name}] Connected to {target}")

    def _connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise ConnectionError("Channel is not connected", self.name)
        return self._conn

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float | None = None,
    ) -> CommandResult:
        timeout = timeout or self.command_timeout
        conn = self._connection()
        logger.log(TRACE, f"[{self.name}] ssh: {command}")

        try:
            result = await asyncio.wait_for(
                conn.run(command, input=stdin or None, check=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[{self.name}] Command timed out after {timeout}s: {command[:50]}")
            return CommandResult(rc=-1, stderr=f"Command timed out after {timeout}s")
        except (OSError, asyncssh.Error) as e:
            raise ConnectionError(f"SSH channel failed: {e}", self.name) from e

        rc = result.exit_status if result.exit_status is not None else -1
        return CommandResult(rc=rc, stdout=str(result.stdout or ""), stderr=str(result.stderr or ""))

    @asynccontextmanager
    async def _sftp(self, operation: str, path: str) -> AsyncIterator[asyncssh.SFTPClient]:
        """SFTP session mapping file errors to OSError and transport errors to ConnectionError."""
        conn = self._connection()
        try:
            async with conn.start_sftp_client() as sftp:
                yield sftp
        except asyncssh.SFTPNoSuchFile as e:
            raise FileNotFoundError(path) from e
        except asyncssh.SFTPError as e:
            raise OSError(f"{operation} {path} failed: {e.reason}") from e
        except (OSError, asyncssh.Error) as e:
            raise ConnectionError(f"SFTP session failed: {e}", self.name) from e

    async def read_file(self, path: str) -> bytes:
        async with self._sftp("read", path) as sftp:
            async with sftp.open(path, "rb") as f:
                return await f.read()

    async def write_file(self, path: str, content: bytes, mode: int | None = None) -> None:
        logger.debug(f"[{self.name}] Writing {len(content)} bytes to {path}")
        async with self._sftp("write", path) as sftp:
            async with sftp.open(path, "wb") as f:
                await f.write(content)
            if mode is not None:
                await sftp.chmod(path, mode)

    async def stat(self, path: str) -> dict[str, Any]:
        try:
            async with self._sftp("stat", path) as sftp:
                attrs = await sftp.stat(path)
        except FileNotFoundError:
            return missing_stat()

        isdir = stat_module.S_ISDIR(attrs.permissions or 0)
        checksum = None
        if not isdir:
            result = await self.run(f"sha256sum {shlex.quote(path)}")
            if result.ok and result.stdout:
                checksum = result.stdout.split()[0]
        return {
            "exists": True,
            "isdir": isdir,
            "size": attrs.size,
            "mode": oct(stat_module.S_IMODE(attrs.permissions or 0)),
            "mtime": attrs.mtime,
            "checksum": checksum,
        }

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            logger.debug(f"[{self.name}] Disconnected")
        self._conn = None


class ConnectionProvider:
    """Opens channels to inventory hosts.

    The provider does not retry; the executor decides the retry policy.

    Example:
        provider = ConnectionProvider(connect_timeout=10)
        async with provider.session(host) as channel:
            result = await channel.run("hostname")
        await provider.close()
    """

    def __init__(
        self,
        connect_timeout: float = 30.0,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        known_hosts: str | None = None,
        host_key_checking: bool = True,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.known_hosts = known_hosts
        self.host_key_checking = host_key_checking
        self._controller: Channel | None = None

    async def open(self, host: HostConfig) -> Channel:
        """Open a channel to the host.

        Raises:
            ConnectionError: On network or authentication failure
        """
        if host.is_local:
            return LocalChannel(host.name, self.command_timeout)

        config = SSHConfig.from_host(
            host,
            known_hosts=self.known_hosts,
            host_key_checking=self.host_key_checking,
            connect_timeout=self.connect_timeout,
        )
        channel = SSHChannel(host.name, config, self.command_timeout)
        await channel.connect()
        return channel

    @asynccontextmanager
    async def session(self, host: HostConfig, opener: Any = None) -> AsyncIterator[Channel]:
        """Open a channel for the duration of a host's task sequence.

        Args:
            host: Host to connect to
            opener: Optional coroutine factory used instead of open(host),
                e.g. open wrapped in a retry policy
        """
        channel = await (opener() if opener else self.open(host))
        try:
            yield channel
        finally:
            await channel.close()

    def controller(self) -> Channel:
        """The single local channel shared by controller-delegated tasks."""
        if self._controller is None:
            self._controller = LocalChannel("controller", self.command_timeout)
        return self._controller

    async def close(self) -> None:
        if self._controller is not None:
            await self._controller.close()
            self._controller = None
