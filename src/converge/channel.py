"""Command channels to managed hosts.

A channel is the capability the engine and the modules use to act on a
host: run a command (optionally escalated), upload a file, download a file.
The core never deals with the SSH handshake itself; ``SSHChannel`` delegates
it to asyncssh. ``LocalChannel`` runs commands on the controller for hosts
with ``connection: local``.

Failure mapping:
- transport problems (connect failure, lost session) -> HostUnreachableError
- sudo refusing to escalate -> PermissionDeniedError
- command running past its timeout -> TaskTimeoutError (process is killed)
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import asyncssh

from .config import RunConfig
from .exceptions import HostUnreachableError, PermissionDeniedError, TaskTimeoutError
from .logging import TRACE
from .types import CommandResult, HostConfig

logger = logging.getLogger(__name__)

# stderr fragments sudo prints when it refuses to escalate
SUDO_DENIED_MARKERS = (
    "a password is required",
    "is not in the sudoers file",
    "is not allowed to execute",
    "incorrect password attempt",
    "no tty present",
    "a terminal is required",
    "sudo: command not found",
)


class Channel(Protocol):
    """Capability interface to a single host."""

    @property
    def name(self) -> str:
        """Inventory name of the host."""
        ...

    async def execute(
        self,
        command: str,
        *,
        become: bool = False,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run a shell command and return its exit code and output."""
        ...

    async def put_file(self, content: bytes, remote_path: str, mode: int | None = None) -> None:
        """Write bytes to a path on the host as the login user."""
        ...

    async def fetch_file(self, remote_path: str) -> bytes:
        """Read a file from the host as the login user."""
        ...

    async def close(self) -> None:
        """Release the underlying connection."""
        ...


@dataclass
class BecomeSettings:
    """How escalated commands are wrapped."""

    user: str = "root"
    password: str | None = None

    def wrap(self, command: str, shell: str, stdin: str | None) -> tuple[str, str | None]:
        """Wrap a command in sudo and return (command, stdin)."""
        inner = shlex.quote(command)
        user = shlex.quote(self.user)
        if self.password is not None:
            wrapped = f"sudo -S -p '' -u {user} -- {shell} -c {inner}"
            return wrapped, f"{self.password}\n{stdin or ''}"
        return f"sudo -n -u {user} -- {shell} -c {inner}", stdin


def check_escalation(host: str, result: CommandResult) -> None:
    """Raise PermissionDeniedError when sudo refused to run the command."""
    if result.rc == 0:
        return
    stderr = result.stderr.lower()
    if any(marker in stderr for marker in SUDO_DENIED_MARKERS):
        raise PermissionDeniedError(
            f"Privilege escalation denied on {host}: {result.stderr.strip()}",
            host=host,
            rc=result.rc,
        )


class SSHChannel:
    """Channel to a remote host over asyncssh.

    The connection is created on first use and cached; concurrent callers
    share it through a lock.

    Example:
        channel = SSHChannel(host, config)
        result = await channel.execute("uptime")
        await channel.close()
    """

    def __init__(self, host: HostConfig, config: RunConfig | None = None) -> None:
        self.host = host
        self.config = config or RunConfig()
        self.become_settings = BecomeSettings(
            user=self.config.become_user,
            password=self.config.become_password,
        )
        self._conn: asyncssh.SSHClientConnection | None = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.host.name

    def _connect_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "host": self.host.address,
            "port": self.host.port,
            "connect_timeout": self.config.connect_timeout,
            "keepalive_interval": 30,
        }
        if self.host.remote_user:
            options["username"] = self.host.remote_user
        if self.config.client_keys:
            options["client_keys"] = self.config.client_keys
        if self.config.known_hosts is None:
            options["known_hosts"] = None
        elif self.config.known_hosts:
            options["known_hosts"] = self.config.known_hosts
        return options

    async def connect(self) -> asyncssh.SSHClientConnection:
        """Establish (or reuse) the SSH connection.

        Raises:
            HostUnreachableError: If the connection cannot be established
        """
        async with self._lock:
            if self._conn is None or self._conn.is_closed():
                logger.debug(f"Connecting to {self.host.address}:{self.host.port}")
                try:
                    self._conn = await asyncssh.connect(**self._connect_options())
                except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
                    raise HostUnreachableError(self.host.name, str(e) or type(e).__name__) from e
                logger.info(f"Connected to {self.host.name}")
            return self._conn

    async def execute(
        self,
        command: str,
        *,
        become: bool = False,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        conn = await self.connect()
        if become:
            command, stdin = self.become_settings.wrap(command, self.host.shell, stdin)
        logger.log(TRACE, f"[{self.host.name}] exec{' (become)' if become else ''}: {command}")

        try:
            async with conn.create_process(command, encoding="utf-8") as process:
                try:
                    stdout, stderr = await asyncio.wait_for(
                        process.communicate(stdin or ""), timeout=timeout
                    )
                except asyncio.TimeoutError:
                    process.kill()
                    raise TaskTimeoutError(
                        f"Command timed out after {timeout}s on {self.host.name}",
                        cmd=command,
                    )
                rc = process.returncode
        except (asyncssh.Error, OSError) as e:
            raise HostUnreachableError(self.host.name, str(e) or type(e).__name__) from e

        result = CommandResult(rc=rc if rc is not None else -1, stdout=stdout or "", stderr=stderr or "")
        logger.log(TRACE, f"[{self.host.name}] rc={result.rc} stdout={len(result.stdout)}B stderr={len(result.stderr)}B")
        if become:
            check_escalation(self.host.name, result)
        return result

    async def put_file(self, content: bytes, remote_path: str, mode: int | None = None) -> None:
        conn = await self.connect()
        logger.debug(f"[{self.host.name}] writing {len(content)} bytes to {remote_path}")
        try:
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(remote_path, "wb") as f:
                    await f.write(content)
                if mode is not None:
                    await sftp.chmod(remote_path, mode)
        except (asyncssh.Error, OSError) as e:
            raise HostUnreachableError(self.host.name, f"upload to {remote_path} failed: {e}") from e

    async def fetch_file(self, remote_path: str) -> bytes:
        conn = await self.connect()
        try:
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(remote_path, "rb") as f:
                    return await f.read()
        except (asyncssh.Error, OSError) as e:
            raise HostUnreachableError(self.host.name, f"download of {remote_path} failed: {e}") from e

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None and not self._conn.is_closed():
                self._conn.close()
                await self._conn.wait_closed()
                logger.debug(f"Disconnected from {self.host.name}")
            self._conn = None


class LocalChannel:
    """Channel that runs commands on the controller itself."""

    def __init__(self, host: HostConfig | None = None, config: RunConfig | None = None) -> None:
        self.host = host or HostConfig(name="localhost", address="127.0.0.1", connection="local")
        self.config = config or RunConfig()
        self.become_settings = BecomeSettings(
            user=self.config.become_user,
            password=self.config.become_password,
        )

    @property
    def name(self) -> str:
        return self.host.name

    async def execute(
        self,
        command: str,
        *,
        become: bool = False,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        if become:
            command, stdin = self.become_settings.wrap(command, self.host.shell, stdin)
        logger.log(TRACE, f"[{self.host.name}] exec{' (become)' if become else ''}: {command}")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.host.shell,
                "-c",
                command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise HostUnreachableError(self.host.name, f"cannot start {self.host.shell}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate((stdin or "").encode()), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TaskTimeoutError(
                f"Command timed out after {timeout}s on {self.host.name}",
                cmd=command,
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        result = CommandResult(
            rc=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if become:
            check_escalation(self.host.name, result)
        return result

    async def put_file(self, content: bytes, remote_path: str, mode: int | None = None) -> None:
        path = Path(remote_path)
        await asyncio.to_thread(path.write_bytes, content)
        if mode is not None:
            os.chmod(path, mode)

    async def fetch_file(self, remote_path: str) -> bytes:
        return await asyncio.to_thread(Path(remote_path).read_bytes)

    async def close(self) -> None:
        pass


@dataclass
class ChannelFactory:
    """Creates and caches one channel per host for the duration of a run.

    Example:
        factory = ChannelFactory(config)
        channel = factory.get(host)
        ...
        await factory.close_all()
    """

    config: RunConfig = field(default_factory=RunConfig)
    _channels: dict[str, Channel] = field(default_factory=dict, init=False, repr=False)

    def create(self, host: HostConfig) -> Channel:
        if host.is_local:
            return LocalChannel(host, self.config)
        return SSHChannel(host, self.config)

    def get(self, host: HostConfig) -> Channel:
        """Return the cached channel for a host, creating it on first use."""
        channel = self._channels.get(host.name)
        if channel is None:
            channel = self.create(host)
            self._channels[host.name] = channel
        return channel

    async def close_all(self) -> None:
        """Close every channel created by this factory."""
        for channel in self._channels.values():
            try:
                await channel.close()
            except Exception as e:
                logger.warning(f"Error closing channel to {channel.name}: {e}")
        self._channels.clear()
