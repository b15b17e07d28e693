"""Shared fixtures: an in-memory host reachable through a fake channel.

``FakeChannel`` interprets the handful of commands the package, service,
user and control modules emit against a ``FakeHost`` record, so executor
tests can check idempotency and failure handling without SSH.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import Any

import pytest

from converge.exceptions import HostUnreachableError, PermissionDeniedError
from converge.facts import FACT_SCRIPT
from converge.inventory import parse_inventory
from converge.types import CommandResult, HostConfig

FIXED_EPOCH = 1700000000


@dataclass
class FakeUser:
    uid: int
    home: str
    shell: str = "/bin/sh"
    primary: str = ""
    groups: set[str] = field(default_factory=set)


@dataclass
class FakeHost:
    """State of an emulated host."""

    os_id: str = "ubuntu"
    os_like: str = "debian"
    version: str = "22.04"
    packages: set[str] = field(default_factory=set)
    missing_packages: set[str] = field(default_factory=set)
    services: dict[str, dict[str, bool]] = field(default_factory=dict)
    users: dict[str, FakeUser] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    dirs: set[str] = field(default_factory=lambda: {"/", "/tmp", "/etc", "/home"})

    def add_service(self, name: str, active: bool = False, enabled: bool = False) -> None:
        self.services[name] = {"active": active, "enabled": enabled}

    def add_user(self, name: str, home: str | None = None, groups: set[str] | None = None) -> None:
        self.users[name] = FakeUser(
            uid=1000 + len(self.users),
            home=home or f"/home/{name}",
            primary=name,
            groups=set(groups or ()),
        )


@dataclass
class ConcurrencyTracker:
    """Counts channels inside a ``sleep`` at the same time."""

    active: int = 0
    peak: int = 0


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(0, stdout, "")


def _fail(rc: int = 1, stderr: str = "") -> CommandResult:
    return CommandResult(rc, "", stderr)


class FakeChannel:
    """Channel double backed by a FakeHost.

    Attributes:
        calls: Every (command, become) pair executed, in order
        unreachable: Every command raises HostUnreachableError
        deny_become: Escalated commands raise PermissionDeniedError
    """

    def __init__(
        self,
        name: str,
        host: FakeHost | None = None,
        tracker: ConcurrencyTracker | None = None,
    ) -> None:
        self._name = name
        self.host = host or FakeHost()
        self.tracker = tracker or ConcurrencyTracker()
        self.calls: list[tuple[str, bool]] = []
        self.unreachable = False
        self.deny_become = False
        self.closed = False

    @property
    def name(self) -> str:
        return self._name

    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]

    async def execute(
        self,
        command: str,
        *,
        become: bool = False,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        if self.unreachable:
            raise HostUnreachableError(self._name, "connection refused")
        self.calls.append((command, become))
        if become and self.deny_become:
            raise PermissionDeniedError(
                f"Privilege escalation failed on {self._name}: a password is required",
                host=self._name,
            )
        if command == FACT_SCRIPT:
            return _ok(self._facts())
        return await self._dispatch(shlex.split(command))

    def _facts(self) -> str:
        return "\n".join([
            f"hostname={self._name}",
            f"fqdn={self._name}.example.com",
            "system=Linux",
            "kernel=6.1.0",
            "architecture=x86_64",
            "user_id=deploy",
            f"epoch={FIXED_EPOCH}",
            f"os_ID={self.host.os_id}",
            f"os_ID_LIKE={self.host.os_like}",
            f'os_VERSION_ID="{self.host.version}"',
            f'os_PRETTY_NAME="{self.host.os_id} {self.host.version}"',
        ]) + "\n"

    async def _dispatch(self, words: list[str]) -> CommandResult:
        while words and "=" in words[0] and not words[0].startswith("-"):
            words = words[1:]
        if not words:
            return _ok()
        program, args = words[0], [w for w in words[1:] if w != "--"]
        handler = getattr(self, f"_cmd_{program.rsplit('/', 1)[-1].replace('-', '_')}", None)
        if handler is None:
            return _fail(127, f"{program}: command not found")
        return await handler(args)

    async def _cmd_sh(self, args: list[str]) -> CommandResult:
        return await self._dispatch(shlex.split(args[1]))

    async def _cmd_echo(self, args: list[str]) -> CommandResult:
        return _ok(" ".join(args) + "\n")

    async def _cmd_true(self, args: list[str]) -> CommandResult:
        return _ok()

    async def _cmd_false(self, args: list[str]) -> CommandResult:
        return _fail(1)

    async def _cmd_exit(self, args: list[str]) -> CommandResult:
        return _fail(int(args[0]), f"exited {args[0]}")

    async def _cmd_sleep(self, args: list[str]) -> CommandResult:
        self.tracker.active += 1
        self.tracker.peak = max(self.tracker.peak, self.tracker.active)
        try:
            await asyncio.sleep(float(args[0]))
        finally:
            self.tracker.active -= 1
        return _ok()

    async def _cmd_dpkg_query(self, args: list[str]) -> CommandResult:
        package = args[-1]
        if package in self.host.packages:
            return _ok("install ok installed")
        return _fail(1, f"dpkg-query: no packages found matching {package}")

    async def _cmd_apt_get(self, args: list[str]) -> CommandResult:
        verb, packages = args[0], [a for a in args[1:] if not a.startswith("-")]
        unknown = [p for p in packages if p in self.host.missing_packages]
        if unknown:
            return _fail(100, f"E: Unable to locate package {unknown[0]}")
        if verb == "install":
            self.host.packages.update(packages)
        elif verb == "remove":
            self.host.packages.difference_update(packages)
        return _ok()

    async def _cmd_systemctl(self, args: list[str]) -> CommandResult:
        verb, name = args[0], args[-1]
        service = self.host.services.get(name)
        if verb == "show":
            return _ok("LoadState=loaded\n" if service else "LoadState=not-found\n")
        if service is None:
            return _fail(5, f"Unit {name}.service not found.")
        if verb == "is-active":
            return _ok() if service["active"] else _fail(3)
        if verb == "is-enabled":
            return _ok() if service["enabled"] else _fail(1)
        if verb in ("start", "restart", "reload"):
            service["active"] = True
        elif verb == "stop":
            service["active"] = False
        elif verb in ("enable", "disable"):
            service["enabled"] = verb == "enable"
        return _ok()

    async def _cmd_getent(self, args: list[str]) -> CommandResult:
        user = self.host.users.get(args[-1])
        if user is None:
            return _fail(2)
        return _ok(f"{args[-1]}:x:{user.uid}:{user.uid}::{user.home}:{user.shell}\n")

    async def _cmd_id(self, args: list[str]) -> CommandResult:
        user = self.host.users.get(args[-1])
        if user is None:
            return _fail(1, f"id: '{args[-1]}': no such user")
        if args[0] == "-gn":
            return _ok(user.primary + "\n")
        return _ok(" ".join([user.primary, *sorted(user.groups)]) + "\n")

    def _user_options(self, args: list[str]) -> tuple[dict[str, Any], str]:
        options: dict[str, Any] = {}
        i = 0
        while i < len(args) - 1:
            flag = args[i]
            if flag in ("-s", "-d", "-G"):
                options[flag] = args[i + 1]
                i += 2
            else:
                options[flag] = True
                i += 1
        return options, args[-1]

    async def _cmd_useradd(self, args: list[str]) -> CommandResult:
        options, name = self._user_options(args)
        if name in self.host.users:
            return _fail(9, f"useradd: user '{name}' already exists")
        self.host.add_user(name, home=options.get("-d"))
        user = self.host.users[name]
        user.shell = options.get("-s", user.shell)
        if "-G" in options:
            user.groups = set(options["-G"].split(","))
        return _ok()

    async def _cmd_usermod(self, args: list[str]) -> CommandResult:
        options, name = self._user_options(args)
        user = self.host.users.get(name)
        if user is None:
            return _fail(6, f"usermod: user '{name}' does not exist")
        user.shell = options.get("-s", user.shell)
        user.home = options.get("-d", user.home)
        if "-G" in options:
            groups = set(options["-G"].split(","))
            user.groups = user.groups | groups if "-a" in options else groups
        return _ok()

    async def _cmd_userdel(self, args: list[str]) -> CommandResult:
        if self.host.users.pop(args[-1], None) is None:
            return _fail(6)
        return _ok()

    async def _cmd_test(self, args: list[str]) -> CommandResult:
        path = args[1]
        return _ok() if path in self.host.files or path in self.host.dirs else _fail(1)

    async def _cmd_cat(self, args: list[str]) -> CommandResult:
        content = self.host.files.get(args[-1])
        if content is None:
            return _fail(1, f"cat: {args[-1]}: No such file or directory")
        return _ok(content)

    async def _cmd_mkdir(self, args: list[str]) -> CommandResult:
        self.host.dirs.add(args[-1])
        return _ok()

    async def _cmd_chmod(self, args: list[str]) -> CommandResult:
        return _ok()

    async def _cmd_chown(self, args: list[str]) -> CommandResult:
        return _ok()

    async def _cmd_cp(self, args: list[str]) -> CommandResult:
        src, dest = [a for a in args if not a.startswith("-")][-2:]
        if src not in self.host.files:
            return _fail(1, f"cp: cannot stat '{src}'")
        self.host.files[dest] = self.host.files[src]
        return _ok()

    async def _cmd_mv(self, args: list[str]) -> CommandResult:
        src, dest = [a for a in args if not a.startswith("-")][-2:]
        if src not in self.host.files:
            return _fail(1, f"mv: cannot stat '{src}'")
        self.host.files[dest] = self.host.files.pop(src)
        return _ok()

    async def _cmd_rm(self, args: list[str]) -> CommandResult:
        self.host.files.pop(args[-1], None)
        return _ok()

    async def put_file(self, content: bytes, remote_path: str, mode: int | None = None) -> None:
        if self.unreachable:
            raise HostUnreachableError(self._name, "connection refused")
        self.host.files[remote_path] = content.decode()

    async def fetch_file(self, remote_path: str) -> bytes:
        return self.host.files[remote_path].encode()

    async def close(self) -> None:
        self.closed = True


class FakeChannelFactory:
    """Hands out one FakeChannel per inventory host."""

    def __init__(self) -> None:
        self.channels: dict[str, FakeChannel] = {}
        self.tracker = ConcurrencyTracker()
        self.closed = False

    def channel(self, name: str) -> FakeChannel:
        if name not in self.channels:
            self.channels[name] = FakeChannel(name, tracker=self.tracker)
        return self.channels[name]

    def get(self, host: HostConfig) -> FakeChannel:
        return self.channel(host.name)

    async def close_all(self) -> None:
        self.closed = True


@pytest.fixture
def fake_factory() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def fleet_inventory():
    """Two web hosts, one db host; web01 also in the canary child group."""
    return parse_inventory("""
all:
  vars:
    env: prod
webservers:
  vars:
    http_port: 80
  children: [canary]
  hosts:
    web02:
      address: 10.0.0.2
canary:
  hosts:
    web01:
      address: 10.0.0.1
      http_port: 8080
databases:
  hosts:
    db01:
      address: 10.0.0.10
""", source="fleet.yml")


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """configure_logging replaces root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
