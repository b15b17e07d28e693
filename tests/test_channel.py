"""Tests for command channels."""

from unittest.mock import AsyncMock, patch

import pytest

from converge.channel import (
    BecomeSettings,
    ChannelFactory,
    LocalChannel,
    SSHChannel,
    check_escalation,
)
from converge.config import RunConfig
from converge.exceptions import HostUnreachableError, PermissionDeniedError, TaskTimeoutError
from converge.types import CommandResult, HostConfig


class TestBecome:
    """Tests for escalation wrapping and denial detection."""

    def test_wrap_non_interactive(self):
        """Without a password sudo must not prompt."""
        command, stdin = BecomeSettings().wrap("apt-get install -y nginx", "/bin/sh", None)
        assert command == "sudo -n -u root -- /bin/sh -c 'apt-get install -y nginx'"
        assert stdin is None

    def test_wrap_with_password(self):
        """A password is fed on stdin ahead of the command's input."""
        command, stdin = BecomeSettings(user="postgres", password="pw").wrap("psql", "/bin/bash", "SELECT 1;")
        assert command.startswith("sudo -S -p '' -u postgres -- /bin/bash -c ")
        assert stdin == "pw\nSELECT 1;"

    def test_denial_detected(self):
        """sudo refusals raise PermissionDeniedError."""
        result = CommandResult(1, "", "sudo: a password is required\n")
        with pytest.raises(PermissionDeniedError) as exc_info:
            check_escalation("web01", result)
        assert exc_info.value.result["host"] == "web01"

    def test_ordinary_failure_passes(self):
        """A failing escalated command is not a denial."""
        check_escalation("web01", CommandResult(1, "", "E: Unable to locate package nosuch"))
        check_escalation("web01", CommandResult(0, "", ""))


class TestLocalChannel:
    """Tests for LocalChannel."""

    @pytest.mark.asyncio
    async def test_execute(self):
        """Commands run through the host's shell."""
        channel = LocalChannel()
        result = await channel.execute("echo out; echo err >&2; exit 3")
        assert (result.rc, result.stdout, result.stderr) == (3, "out\n", "err\n")

    @pytest.mark.asyncio
    async def test_stdin(self):
        """stdin reaches the command."""
        result = await LocalChannel().execute("tr a-z A-Z", stdin="hello")
        assert result.stdout == "HELLO"

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self):
        """A command past its timeout is killed and reported."""
        with pytest.raises(TaskTimeoutError):
            await LocalChannel().execute("sleep 5", timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_shell(self):
        """A shell that cannot start makes the host unreachable."""
        host = HostConfig(name="odd", address="127.0.0.1", connection="local", shell="/nonexistent/sh")
        with pytest.raises(HostUnreachableError):
            await LocalChannel(host).execute("true")

    @pytest.mark.asyncio
    async def test_put_and_fetch(self, tmp_path):
        """Files round-trip with the requested mode."""
        channel = LocalChannel()
        target = tmp_path / "blob"
        await channel.put_file(b"\x00data", str(target), mode=0o600)

        assert (target.stat().st_mode & 0o777) == 0o600
        assert await channel.fetch_file(str(target)) == b"\x00data"


class TestSSHChannel:
    """Tests for SSHChannel that need no server."""

    def test_connect_options(self):
        """Inventory and config settings reach asyncssh."""
        host = HostConfig(name="web01", address="10.0.0.1", port=2222, remote_user="deploy")
        config = RunConfig(known_hosts=None, client_keys=["~/.ssh/id_ed25519"], connect_timeout=5)
        options = SSHChannel(host, config)._connect_options()

        assert options["host"] == "10.0.0.1"
        assert options["port"] == 2222
        assert options["username"] == "deploy"
        assert options["known_hosts"] is None
        assert options["client_keys"] == ["~/.ssh/id_ed25519"]
        assert options["connect_timeout"] == 5

    def test_default_known_hosts(self):
        """An empty known_hosts setting leaves the transport default."""
        options = SSHChannel(HostConfig(name="a", address="a"))._connect_options()
        assert "known_hosts" not in options
        assert "username" not in options

    @pytest.mark.asyncio
    async def test_connect_failure_is_unreachable(self):
        """Connection errors become HostUnreachableError."""
        channel = SSHChannel(HostConfig(name="web01", address="10.0.0.1"))
        with patch("converge.channel.asyncssh.connect", new=AsyncMock(side_effect=OSError("Connection refused"))):
            with pytest.raises(HostUnreachableError, match="Connection refused"):
                await channel.execute("uptime")


class TestChannelFactory:
    """Tests for ChannelFactory."""

    def test_kind_and_caching(self):
        """Local hosts get LocalChannel; channels are cached per host."""
        factory = ChannelFactory()
        local = HostConfig(name="localhost", address="127.0.0.1", connection="local")
        remote = HostConfig(name="web01", address="10.0.0.1")

        assert isinstance(factory.get(local), LocalChannel)
        assert isinstance(factory.get(remote), SSHChannel)
        assert factory.get(remote) is factory.get(remote)

    @pytest.mark.asyncio
    async def test_close_all(self):
        """close_all closes every channel and forgets them."""
        factory = ChannelFactory()
        host = HostConfig(name="web01", address="10.0.0.1")
        channel = factory.get(host)
        channel.close = AsyncMock()

        await factory.close_all()

        channel.close.assert_awaited_once()
        assert factory.get(host) is not channel
