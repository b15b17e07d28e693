"""Tests for the built-in modules.

Modules that only need package, service, user or command plumbing run
against the in-memory FakeChannel. Filesystem modules run for real on the
controller through LocalChannel inside a temporary directory.
"""

import io
import re
import sys
import tarfile

import pytest

from conftest import FakeChannel, FakeHost
from converge.channel import LocalChannel
from converge.exceptions import (
    ModuleError,
    NotFoundError,
    PreconditionFailedError,
    RemoteExecutionError,
    UnknownModuleError,
)
from converge.modules import ModuleContext, default_registry, get_module, list_modules
from converge.modules.base import parse_mode, parse_stat
from converge.modules.users import split_keys
from converge.modules.variants import (
    AptPackageManager,
    OpenRCServiceManager,
    YumPackageManager,
    package_manager_for,
    service_manager_for,
)
from converge.templating import Templar
from converge.types import HostConfig


def fake_ctx(host: FakeHost | None = None, facts=None, **kwargs) -> ModuleContext:
    facts = {"os_family": "debian", "distribution": "ubuntu"} if facts is None else facts
    return ModuleContext(
        host=HostConfig(name="web01", address="10.0.0.1"),
        channel=FakeChannel("web01", host),
        facts=facts,
        templar=Templar(),
        package_manager=package_manager_for(facts),
        service_manager=service_manager_for(facts),
        **kwargs,
    )


@pytest.fixture
def local_ctx(tmp_path) -> ModuleContext:
    host = HostConfig(
        name="localhost",
        address="127.0.0.1",
        connection="local",
        python_interpreter=sys.executable,
    )
    return ModuleContext(
        host=host,
        channel=LocalChannel(host),
        templar=Templar(tmp_path),
        base_dir=tmp_path,
        timeout=30,
    )


async def invoke(ctx: ModuleContext, module_name: str, /, **args):
    return await default_registry().invoke(module_name, ctx, args)


def make_tarball(path, members: dict[str, str]) -> None:
    with tarfile.open(path, "w:gz") as tar:
        for name, content in members.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


class TestRegistry:
    """Tests for module lookup and invocation."""

    def test_builtin_names(self):
        """Every documented module is registered."""
        expected = {
            "package", "service", "file", "copy", "stat", "archive", "unarchive", "user",
            "authorized_key", "find", "command", "shell", "ping", "set_fact", "debug",
            "assert", "fail",
        }
        assert set(list_modules()) == expected

    def test_fqcn_aliases(self):
        """Ansible-style names resolve to the short module."""
        assert get_module("ansible.builtin.copy").name == "copy"
        assert get_module("ansible.posix.authorized_key").name == "authorized_key"
        assert get_module("nope") is None

    def test_non_idempotent_modules_are_declared(self):
        """archive, command and shell declare no idempotency contract."""
        flagged = {s.name for s in default_registry().list_modules() if not s.idempotent}
        assert flagged == {"archive", "command", "shell"}

    @pytest.mark.asyncio
    async def test_unknown_module(self):
        """Invoking an unknown module raises UnknownModuleError."""
        with pytest.raises(UnknownModuleError):
            await invoke(fake_ctx(), "frobnicate")

    @pytest.mark.asyncio
    async def test_bad_arguments(self):
        """Unknown arguments fail before the module runs."""
        ctx = fake_ctx()
        with pytest.raises(PreconditionFailedError) as exc_info:
            await invoke(ctx, "ping", colour="blue")
        assert exc_info.value.result["module"] == "ping"
        assert ctx.channel.calls == []


class TestVariants:
    """Tests for per-OS-family variant selection."""

    def test_family_mapping(self):
        """The package manager follows the OS family."""
        assert isinstance(package_manager_for({"os_family": "debian"}), AptPackageManager)
        assert package_manager_for({"os_family": "redhat"}).name == "dnf"
        assert package_manager_for({"os_family": "alpine"}).name == "apk"
        assert package_manager_for({"os_family": "unknown"}) is None

    def test_old_redhat_uses_yum(self):
        """Releases before dnf fall back to yum."""
        facts = {"os_family": "redhat", "distribution": "centos", "distribution_version": "7.9"}
        assert isinstance(package_manager_for(facts), YumPackageManager)

    def test_explicit_manager(self):
        """An explicit manager wins; an unknown one is a precondition failure."""
        assert package_manager_for({"os_family": "debian"}, "pacman").name == "pacman"
        with pytest.raises(PreconditionFailedError):
            package_manager_for({}, "bogus")

    def test_service_manager(self):
        """Alpine uses OpenRC, everything else systemd."""
        assert isinstance(service_manager_for({"os_family": "alpine"}), OpenRCServiceManager)
        assert service_manager_for({"os_family": "debian"}).name == "systemd"


class TestPackageModule:
    """Tests for the package module."""

    @pytest.mark.asyncio
    async def test_install_is_idempotent(self):
        """First call installs and changes, second reports ok."""
        ctx = fake_ctx()
        first = await invoke(ctx, "package", name="nginx")
        second = await invoke(ctx, "package", name="nginx")

        assert first["changed"] is True
        assert first["installed"] == ["nginx"]
        assert second["changed"] is False
        assert sum("apt-get install" in c for c in ctx.channel.commands()) == 1

    @pytest.mark.asyncio
    async def test_only_missing_packages_installed(self):
        """Already-present packages are not reinstalled."""
        ctx = fake_ctx(FakeHost(packages={"git"}))
        result = await invoke(ctx, "package", name=["git", "curl"])
        assert result["installed"] == ["curl"]

    @pytest.mark.asyncio
    async def test_remove(self):
        """state=absent removes installed packages once."""
        ctx = fake_ctx(FakeHost(packages={"telnet"}))
        first = await invoke(ctx, "package", name="telnet", state="absent")
        second = await invoke(ctx, "package", name="telnet", state="absent")
        assert (first["changed"], second["changed"]) == (True, False)

    @pytest.mark.asyncio
    async def test_unknown_family(self):
        """No known manager and none given is a precondition failure."""
        with pytest.raises(PreconditionFailedError):
            await invoke(fake_ctx(facts={"os_family": "unknown"}), "package", name="nginx")

    @pytest.mark.asyncio
    async def test_install_failure(self):
        """A failing install surfaces as RemoteExecutionError."""
        ctx = fake_ctx(FakeHost(missing_packages={"nosuch"}))
        with pytest.raises(RemoteExecutionError) as exc_info:
            await invoke(ctx, "package", name="nosuch")
        assert exc_info.value.rc == 100


class TestServiceModule:
    """Tests for the service module."""

    @pytest.mark.asyncio
    async def test_started_and_enabled(self):
        """Starting and enabling acts once."""
        host = FakeHost()
        host.add_service("nginx")
        ctx = fake_ctx(host)

        first = await invoke(ctx, "service", name="nginx", state="started", enabled=True)
        second = await invoke(ctx, "service", name="nginx", state="started", enabled=True)

        assert first["actions"] == ["started", "enabled"]
        assert second["changed"] is False
        assert host.services["nginx"] == {"active": True, "enabled": True}

    @pytest.mark.asyncio
    async def test_stopped(self):
        """Stopping an inactive service changes nothing."""
        host = FakeHost()
        host.add_service("cups", active=False)
        result = await invoke(fake_ctx(host), "service", name="cups", state="stopped")
        assert result["changed"] is False

    @pytest.mark.asyncio
    async def test_restarted_always_changes(self):
        """restarted has no idempotency contract."""
        host = FakeHost()
        host.add_service("nginx", active=True)
        ctx = fake_ctx(host)
        results = [await invoke(ctx, "service", name="nginx", state="restarted") for _ in range(2)]
        assert all(r["changed"] for r in results)

    @pytest.mark.asyncio
    async def test_missing_service(self):
        """A service the host doesn't know is a precondition failure."""
        with pytest.raises(PreconditionFailedError):
            await invoke(fake_ctx(), "service", name="ghost", state="started")

    @pytest.mark.asyncio
    async def test_requires_state_or_enabled(self):
        """Asking for nothing is rejected."""
        with pytest.raises(PreconditionFailedError):
            await invoke(fake_ctx(), "service", name="nginx")


class TestUserModule:
    """Tests for the user module."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self):
        """A new account is created once."""
        host = FakeHost()
        ctx = fake_ctx(host)
        first = await invoke(ctx, "user", name="deploy", shell="/bin/bash", groups=["sudo"])
        second = await invoke(ctx, "user", name="deploy", shell="/bin/bash", groups=["sudo"])

        assert first["created"] is True
        assert second["changed"] is False
        assert host.users["deploy"].shell == "/bin/bash"

    @pytest.mark.asyncio
    async def test_shell_change(self):
        """A different shell is corrected."""
        host = FakeHost()
        host.add_user("deploy")
        result = await invoke(fake_ctx(host), "user", name="deploy", shell="/bin/zsh")
        assert result["updated"] == ["shell"]

    @pytest.mark.asyncio
    async def test_groups_append(self):
        """With append, missing groups are added and others kept."""
        host = FakeHost()
        host.add_user("deploy", groups={"docker"})
        result = await invoke(fake_ctx(host), "user", name="deploy", groups="sudo", append=True)

        assert result["changed"] is True
        assert host.users["deploy"].groups == {"docker", "sudo"}

    @pytest.mark.asyncio
    async def test_groups_append_satisfied(self):
        """With append, a subset of the current groups changes nothing."""
        host = FakeHost()
        host.add_user("deploy", groups={"docker", "sudo"})
        result = await invoke(fake_ctx(host), "user", name="deploy", groups="sudo", append=True)
        assert result["changed"] is False

    @pytest.mark.asyncio
    async def test_groups_replace(self):
        """Without append, the supplementary groups are replaced."""
        host = FakeHost()
        host.add_user("deploy", groups={"docker", "sudo"})
        result = await invoke(fake_ctx(host), "user", name="deploy", groups=["sudo"])

        assert result["changed"] is True
        assert host.users["deploy"].groups == {"sudo"}

    @pytest.mark.asyncio
    async def test_absent(self):
        """Removing an account is idempotent."""
        host = FakeHost()
        host.add_user("old")
        ctx = fake_ctx(host)
        first = await invoke(ctx, "user", name="old", state="absent")
        second = await invoke(ctx, "user", name="old", state="absent")
        assert (first["changed"], second["changed"]) == (True, False)


class TestAuthorizedKeyModule:
    """Tests for the authorized_key module."""

    KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExample deploy@laptop"
    OTHER = "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQOther ops@desk"

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self):
        """The key line is written once."""
        host = FakeHost()
        host.add_user("deploy")
        ctx = fake_ctx(host)

        first = await invoke(ctx, "authorized_key", user="deploy", key=self.KEY)
        second = await invoke(ctx, "authorized_key", user="deploy", key=self.KEY)

        assert first["changed"] is True
        assert second["changed"] is False
        assert host.files["/home/deploy/.ssh/authorized_keys"] == self.KEY + "\n"

    @pytest.mark.asyncio
    async def test_keeps_other_keys(self):
        """Adding a key preserves existing ones unless exclusive."""
        host = FakeHost()
        host.add_user("deploy")
        host.files["/home/deploy/.ssh/authorized_keys"] = self.OTHER + "\n"
        ctx = fake_ctx(host)

        await invoke(ctx, "authorized_key", user="deploy", key=self.KEY)
        assert split_keys(host.files["/home/deploy/.ssh/authorized_keys"]) == [self.OTHER, self.KEY]

        await invoke(ctx, "authorized_key", user="deploy", key=self.KEY, exclusive=True)
        assert split_keys(host.files["/home/deploy/.ssh/authorized_keys"]) == [self.KEY]

    @pytest.mark.asyncio
    async def test_absent(self):
        """state=absent removes only the given key."""
        host = FakeHost()
        host.add_user("deploy")
        host.files["/home/deploy/.ssh/authorized_keys"] = f"{self.OTHER}\n{self.KEY}\n"
        result = await invoke(fake_ctx(host), "authorized_key", user="deploy", key=self.KEY, state="absent")

        assert result["removed"] == 1
        assert host.files["/home/deploy/.ssh/authorized_keys"] == self.OTHER + "\n"

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        """Keys for a missing account are a precondition failure."""
        with pytest.raises(PreconditionFailedError):
            await invoke(fake_ctx(), "authorized_key", user="ghost", key=self.KEY)

    def test_split_keys(self):
        """Comments, blanks and duplicates are dropped."""
        content = f"# managed\n\n{self.KEY}\n{self.KEY}\n{self.OTHER}\n"
        assert split_keys(content) == [self.KEY, self.OTHER]


class TestCommandModules:
    """Tests for command and shell."""

    @pytest.mark.asyncio
    async def test_command_always_changes(self):
        """Raw commands report changed every time."""
        ctx = fake_ctx()
        results = [await invoke(ctx, "command", cmd="echo hello") for _ in range(2)]
        assert all(r["changed"] for r in results)
        assert results[0]["stdout"] == "hello"

    @pytest.mark.asyncio
    async def test_creates_guard(self):
        """An existing creates path skips the command."""
        ctx = fake_ctx(FakeHost(files={"/opt/app/.installed": ""}))
        result = await invoke(ctx, "command", cmd="echo install", creates="/opt/app/.installed")

        assert result["changed"] is False
        assert not any(c.startswith("echo") for c in ctx.channel.commands())

    @pytest.mark.asyncio
    async def test_removes_guard(self):
        """A missing removes path skips the command."""
        result = await invoke(fake_ctx(), "command", cmd="echo cleanup", removes="/tmp/stale")
        assert result["changed"] is False

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        """A failing command raises with its rc."""
        with pytest.raises(RemoteExecutionError) as exc_info:
            await invoke(fake_ctx(), "command", cmd="exit 3")
        assert exc_info.value.result["rc"] == 3

    @pytest.mark.asyncio
    async def test_unbalanced_quote(self):
        """A command line that cannot be split is a precondition failure."""
        ctx = fake_ctx()
        with pytest.raises(PreconditionFailedError, match="No closing quotation"):
            await invoke(ctx, "command", cmd='echo "unterminated')
        assert ctx.channel.commands() == []

    @pytest.mark.asyncio
    async def test_command_quotes_words(self, local_ctx):
        """command passes shell metacharacters literally."""
        result = await invoke(local_ctx, "command", argv=["echo", "a|b", "$HOME"])
        assert result["stdout"] == "a|b $HOME"

    @pytest.mark.asyncio
    async def test_shell_pipeline(self, local_ctx, tmp_path):
        """shell runs through the host's shell."""
        result = await invoke(local_ctx, "shell", cmd="echo hello | tr a-z A-Z", chdir=str(tmp_path))
        assert result["stdout"] == "HELLO"

    @pytest.mark.asyncio
    async def test_stdin(self, local_ctx):
        """stdin is fed to the command."""
        result = await invoke(local_ctx, "command", cmd="cat", stdin="from stdin")
        assert result["stdout"] == "from stdin"


class TestControlModules:
    """Tests for ping, set_fact, debug, assert and fail."""

    @pytest.mark.asyncio
    async def test_ping(self):
        """ping round-trips through the channel without escalation."""
        ctx = fake_ctx(become=True)
        result = await invoke(ctx, "ping")
        assert result == {"changed": False, "ping": "pong"}
        assert ctx.channel.calls == [("echo pong", False)]

    @pytest.mark.asyncio
    async def test_set_fact(self):
        """set_fact returns the variables to merge."""
        result = await invoke(fake_ctx(), "set_fact", release="2.1", debug=False)
        assert result["set_vars"] == {"release": "2.1", "debug": False}

    @pytest.mark.asyncio
    async def test_debug_var(self):
        """debug var shows a value or flags it undefined."""
        ctx = fake_ctx(vars={"release": "2.1"})
        assert (await invoke(ctx, "debug", var="release"))["release"] == "2.1"
        assert (await invoke(ctx, "debug", var="missing"))["missing"] == "VARIABLE IS NOT DEFINED!"

    @pytest.mark.asyncio
    async def test_assert(self):
        """assert passes when all expressions hold."""
        ctx = fake_ctx(vars={"port": 80})
        result = await invoke(ctx, "assert", that=["port > 0", "port < 1024"])
        assert result["msg"] == "All assertions passed"

    @pytest.mark.asyncio
    async def test_assert_fails(self):
        """A false or undefined expression fails with fail_msg."""
        ctx = fake_ctx(vars={"port": 80})
        with pytest.raises(ModuleError) as exc_info:
            await invoke(ctx, "assert", that=["port > 0", "undefined_thing"], fail_msg="bad port")
        assert exc_info.value.msg == "bad port"
        assert exc_info.value.result["assertion"] == "undefined_thing"

    @pytest.mark.asyncio
    async def test_fail(self):
        """fail always raises."""
        with pytest.raises(ModuleError, match="stop here"):
            await invoke(fake_ctx(), "fail", msg="stop here")


class TestFileModules:
    """Tests for file, copy and stat on the local filesystem."""

    @pytest.mark.asyncio
    async def test_directory_is_idempotent(self, local_ctx, tmp_path):
        """A directory is created once and its mode corrected once."""
        target = tmp_path / "conf.d"
        first = await invoke(local_ctx, "file", path=str(target), state="directory", mode="0750")
        second = await invoke(local_ctx, "file", path=str(target), state="directory", mode="0750")

        assert first["changed"] is True
        assert second["changed"] is False
        assert (target.stat().st_mode & 0o777) == 0o750

    @pytest.mark.asyncio
    async def test_absent(self, local_ctx, tmp_path):
        """state=absent removes and then reports ok."""
        target = tmp_path / "old.txt"
        target.write_text("x")
        first = await invoke(local_ctx, "file", path=str(target), state="absent")
        second = await invoke(local_ctx, "file", path=str(target), state="absent")
        assert (first["changed"], second["changed"]) == (True, False)
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_link(self, local_ctx, tmp_path):
        """A symlink is created once and retargeted when wrong."""
        (tmp_path / "v1").mkdir()
        (tmp_path / "v2").mkdir()
        link = tmp_path / "current"

        first = await invoke(local_ctx, "file", path=str(link), state="link", src=str(tmp_path / "v1"))
        second = await invoke(local_ctx, "file", path=str(link), state="link", src=str(tmp_path / "v1"))
        third = await invoke(local_ctx, "file", path=str(link), state="link", src=str(tmp_path / "v2"))

        assert [first["changed"], second["changed"], third["changed"]] == [True, False, True]
        assert link.resolve() == (tmp_path / "v2").resolve()

    @pytest.mark.asyncio
    async def test_file_state_requires_existing(self, local_ctx, tmp_path):
        """state=file never creates a file."""
        with pytest.raises(PreconditionFailedError):
            await invoke(local_ctx, "file", path=str(tmp_path / "missing"))

    @pytest.mark.asyncio
    async def test_copy_content_is_idempotent(self, local_ctx, tmp_path):
        """Identical content is detected by checksum."""
        dest = tmp_path / "app.conf"
        first = await invoke(local_ctx, "copy", dest=str(dest), content="port=80\n", mode="0640")
        second = await invoke(local_ctx, "copy", dest=str(dest), content="port=80\n", mode="0640")

        assert first["changed"] is True
        assert second["changed"] is False
        assert dest.read_text() == "port=80\n"
        assert (dest.stat().st_mode & 0o777) == 0o640

    @pytest.mark.asyncio
    async def test_copy_same_size_different_content(self, local_ctx, tmp_path):
        """Content is compared, not existence or size."""
        dest = tmp_path / "app.conf"
        dest.write_text("port=80\n")
        result = await invoke(local_ctx, "copy", dest=str(dest), content="port=81\n")
        assert result["changed"] is True
        assert dest.read_text() == "port=81\n"

    @pytest.mark.asyncio
    async def test_copy_keeps_existing_mode(self, local_ctx, tmp_path):
        """Replacing a file keeps its mode."""
        dest = tmp_path / "secret"
        dest.write_text("old")
        dest.chmod(0o600)
        await invoke(local_ctx, "copy", dest=str(dest), content="new")
        assert (dest.stat().st_mode & 0o777) == 0o600

    @pytest.mark.asyncio
    async def test_copy_backup(self, local_ctx, tmp_path):
        """backup keeps a timestamped copy of the previous content."""
        dest = tmp_path / "app.conf"
        dest.write_text("old\n")
        result = await invoke(local_ctx, "copy", dest=str(dest), content="new\n", backup=True)

        backup = result["backup_file"]
        assert re.search(r"\.converge-backup-\d{8}T\d{6}$", backup)
        assert open(backup).read() == "old\n"

    @pytest.mark.asyncio
    async def test_copy_from_controller_file(self, local_ctx, tmp_path):
        """src resolves against the playbook directory."""
        (tmp_path / "files").mkdir()
        (tmp_path / "files" / "motd").write_text("welcome\n")
        dest = tmp_path / "motd"

        result = await invoke(local_ctx, "copy", src="files/motd", dest=str(dest))
        assert result["changed"] is True
        assert dest.read_text() == "welcome\n"

    @pytest.mark.asyncio
    async def test_copy_missing_source(self, local_ctx, tmp_path):
        """A missing controller file is a precondition failure."""
        with pytest.raises(PreconditionFailedError):
            await invoke(local_ctx, "copy", src="nope.txt", dest=str(tmp_path / "x"))

    @pytest.mark.asyncio
    async def test_stat(self, local_ctx, tmp_path):
        """stat reports existence and checksum, never change."""
        target = tmp_path / "data"
        target.write_text("abc")

        missing = await invoke(local_ctx, "stat", path=str(tmp_path / "nope"))
        found = await invoke(local_ctx, "stat", path=str(target), checksum=True)

        assert missing["stat"]["exists"] is False
        assert found["changed"] is False
        assert found["stat"]["isreg"] is True
        assert found["stat"]["size"] == 3
        assert found["stat"]["checksum"] == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_parse_mode(self):
        """Modes accept strings and YAML-converted ints."""
        assert parse_mode("0644") == 0o644
        assert parse_mode("755") == 0o755
        assert parse_mode(420) == 0o644
        assert parse_mode(None) is None
        with pytest.raises(PreconditionFailedError):
            parse_mode("rwx")

    def test_parse_stat(self):
        """GNU and BSD stat output parse the same way."""
        gnu = parse_stat("644|root|root|regular file|12|1700000000\n")
        bsd = parse_stat("755|root|wheel|Directory|64|1700000000\n")
        assert gnu.is_file and gnu.mode == 0o644
        assert bsd.is_dir and bsd.group == "wheel"


class TestArchiveModules:
    """Tests for archive, unarchive and find, including the restore flow."""

    @pytest.mark.asyncio
    async def test_archive_with_generated_name(self, local_ctx, tmp_path):
        """dest_dir + prefix yields a fixed-width timestamped name."""
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "config.yml").write_text("a: 1\n")
        (tmp_path / "backups").mkdir()

        result = await invoke(
            local_ctx, "archive",
            path=str(tmp_path / "app"), dest_dir=str(tmp_path / "backups"), prefix="app",
        )

        assert result["changed"] is True
        assert re.fullmatch(r"app-\d{8}T\d{6}\.tar\.gz", result["dest"].rsplit("/", 1)[-1])
        with tarfile.open(result["dest"]) as tar:
            assert "app/config.yml" in tar.getnames()
        assert not list((tmp_path / "backups").glob("*.partial"))

    @pytest.mark.asyncio
    async def test_archive_existing_dest(self, local_ctx, tmp_path):
        """An explicit dest that already exists is left alone."""
        (tmp_path / "data").mkdir()
        dest = tmp_path / "data.tar.gz"
        dest.write_bytes(b"existing")
        result = await invoke(local_ctx, "archive", path=str(tmp_path / "data"), dest=str(dest))

        assert result["changed"] is False
        assert dest.read_bytes() == b"existing"

    @pytest.mark.asyncio
    async def test_archive_missing_source(self, local_ctx, tmp_path):
        """A missing source is a precondition failure."""
        with pytest.raises(PreconditionFailedError):
            await invoke(local_ctx, "archive", path=str(tmp_path / "nope"), dest=str(tmp_path / "x.tar.gz"))

    @pytest.mark.asyncio
    async def test_find_sorted(self, local_ctx, tmp_path):
        """find lists matching files ordered by the sort key."""
        for name in ("app-20240115T0000.tar.gz", "app-20240101T0000.tar.gz", "notes.txt"):
            (tmp_path / name).write_text(name)

        result = await invoke(local_ctx, "find", paths=str(tmp_path), patterns="app-*.tar.gz")
        reverse = await invoke(local_ctx, "find", paths=str(tmp_path), patterns="app-*.tar.gz", reverse=True)

        assert result["changed"] is False
        assert [f["name"] for f in result["files"]] == [
            "app-20240101T0000.tar.gz",
            "app-20240115T0000.tar.gz",
        ]
        assert reverse["files"][0]["name"] == "app-20240115T0000.tar.gz"

    @pytest.mark.asyncio
    async def test_find_missing_root(self, local_ctx, tmp_path):
        """A missing search root is reported, not fatal."""
        result = await invoke(local_ctx, "find", paths=[str(tmp_path), str(tmp_path / "nope")])
        assert result["skipped_paths"] == [str(tmp_path / "nope")]

    @pytest.mark.asyncio
    async def test_restore_flow(self, local_ctx, tmp_path):
        """Find the newest backup, extract it once, then skip on the guard."""
        backups = tmp_path / "backups"
        backups.mkdir()
        make_tarball(backups / "app-20240101T0000.tar.gz", {"app/version": "1"})
        make_tarball(backups / "app-20240115T0000.tar.gz", {"app/version": "2"})
        restore = tmp_path / "restore"
        restore.mkdir()
        guard = str(restore / "app" / "version")

        found = await invoke(local_ctx, "find", paths=str(backups), patterns="app-*.tar.gz")
        latest = local_ctx.templar.template(
            "{{ found.files | latest('app-*.tar.gz') }}", {"found": found}
        )
        assert latest.endswith("app-20240115T0000.tar.gz")

        first = await invoke(local_ctx, "unarchive", src=latest, dest=str(restore), creates=guard)
        second = await invoke(local_ctx, "unarchive", src=latest, dest=str(restore), creates=guard)

        assert first["changed"] is True
        assert first["extracted"] == ["app"]
        assert (restore / "app" / "version").read_text() == "2"
        assert second["changed"] is False
        assert second["skipped_extraction"] is True
        assert not [p for p in restore.iterdir() if p.name.startswith(".converge-unarchive")]

    @pytest.mark.asyncio
    async def test_unarchive_glob_src(self, local_ctx, tmp_path):
        """A glob src picks the newest matching archive."""
        make_tarball(tmp_path / "app-20240101T000000.tar.gz", {"v": "old"})
        make_tarball(tmp_path / "app-20240301T000000.tar.gz", {"v": "new"})
        dest = tmp_path / "out"
        dest.mkdir()

        result = await invoke(local_ctx, "unarchive", src=str(tmp_path / "app-*.tar.gz"), dest=str(dest))
        assert result["src"].endswith("app-20240301T000000.tar.gz")
        assert (dest / "v").read_text() == "new"

    @pytest.mark.asyncio
    async def test_unarchive_glob_without_match(self, local_ctx, tmp_path):
        """No match for a glob src raises NotFoundError."""
        (tmp_path / "out").mkdir()
        with pytest.raises(NotFoundError):
            await invoke(local_ctx, "unarchive", src=str(tmp_path / "none-*.tar.gz"), dest=str(tmp_path / "out"))

    @pytest.mark.asyncio
    async def test_unarchive_corrupt_archive_cleans_up(self, local_ctx, tmp_path):
        """A failed extraction leaves no staging directory behind."""
        (tmp_path / "bad.tar.gz").write_bytes(b"not an archive")
        dest = tmp_path / "out"
        dest.mkdir()

        with pytest.raises(RemoteExecutionError):
            await invoke(local_ctx, "unarchive", src=str(tmp_path / "bad.tar.gz"), dest=str(dest))
        assert list(dest.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unarchive_from_controller(self, local_ctx, tmp_path):
        """remote_src false uploads the archive first."""
        make_tarball(tmp_path / "bundle.tar.gz", {"site/index.html": "<h1>hi</h1>"})
        dest = tmp_path / "www"
        dest.mkdir()

        result = await invoke(local_ctx, "unarchive", src="bundle.tar.gz", dest=str(dest), remote_src=False)
        assert result["changed"] is True
        assert (dest / "site" / "index.html").read_text() == "<h1>hi</h1>"

    @pytest.mark.asyncio
    async def test_unarchive_missing_dest(self, local_ctx, tmp_path):
        """The destination directory must exist."""
        make_tarball(tmp_path / "a.tar.gz", {"x": "1"})
        with pytest.raises(PreconditionFailedError):
            await invoke(local_ctx, "unarchive", src=str(tmp_path / "a.tar.gz"), dest=str(tmp_path / "nope"))
