"""Shared plumbing for built-in modules.

Modules are ``async def <name>_module(ctx: ModuleContext, **args) -> dict``
functions. They act on the host only through ``ctx`` and return a result
dict with at least ``changed``; failures are raised as ``ModuleError``
subclasses.
"""

import hashlib
import logging
import shlex
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from ..channel import Channel
from ..exceptions import PreconditionFailedError, RemoteExecutionError
from ..types import CommandResult, HostConfig

if TYPE_CHECKING:
    from ..templating import Templar
    from .variants import PackageManager, ServiceManager

logger = logging.getLogger(__name__)

REMOTE_TMP = "/tmp"
DEFAULT_FILE_MODE = 0o644

STAT_COMMAND = (
    "stat -c '%a|%U|%G|%F|%s|%Y' -- {path} 2>/dev/null"
    " || stat -f '%Lp|%Su|%Sg|%HT|%z|%m' -- {path}"
)

CHECKSUM_COMMAND = "sha256sum -- {path} 2>/dev/null || shasum -a 256 -- {path}"


def q(value: Any) -> str:
    """Shell-quote a value."""
    return shlex.quote(str(value))


def parse_mode(mode: Any) -> int | None:
    """Normalize a file mode given as "0644", "644", 0o644 or None.

    YAML 1.1 reads an unquoted 0644 as the octal int 420, so ints are
    taken as already-converted values.
    """
    if mode is None or mode == "":
        return None
    if isinstance(mode, int):
        return mode
    try:
        return int(str(mode), 8)
    except ValueError:
        raise PreconditionFailedError(f"Invalid file mode: {mode}", mode=str(mode))


def sha256_bytes(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


@dataclass
class RemoteStat:
    """Subset of ``stat`` output used by the file modules."""

    mode: int
    owner: str
    group: str
    file_type: str
    size: int
    mtime: int

    @property
    def is_dir(self) -> bool:
        return self.file_type == "directory"

    @property
    def is_link(self) -> bool:
        return self.file_type == "link"

    @property
    def is_file(self) -> bool:
        return self.file_type == "file"

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": True,
            "mode": f"{self.mode:04o}",
            "owner": self.owner,
            "group": self.group,
            "isdir": self.is_dir,
            "islnk": self.is_link,
            "isreg": self.is_file,
            "size": self.size,
            "mtime": self.mtime,
        }


def parse_stat(output: str) -> RemoteStat:
    mode, owner, group, kind, size, mtime = output.strip().splitlines()[-1].split("|", 5)
    kind = kind.lower()
    if "directory" in kind:
        file_type = "directory"
    elif "link" in kind:
        file_type = "link"
    elif "regular" in kind:
        file_type = "file"
    else:
        file_type = kind
    return RemoteStat(
        mode=int(mode, 8),
        owner=owner,
        group=group,
        file_type=file_type,
        size=int(size),
        mtime=int(mtime),
    )


@dataclass
class ModuleContext:
    """Everything a module may use to act on one host.

    Attributes:
        host: Target host
        channel: Command channel to the host
        facts: Read-only facts gathered at play start
        become: Whether commands run with escalated privileges
        timeout: Per-command timeout in seconds
        vars: Read-only view of the task's variable scope
        templar: Template engine (used by debug/assert)
        base_dir: Directory controller-side relative paths resolve against
        package_manager: Package manager variant chosen for this host
        service_manager: Service manager variant chosen for this host
    """

    host: HostConfig
    channel: Channel
    facts: Mapping[str, Any] = field(default_factory=dict)
    become: bool = False
    timeout: float | None = None
    vars: Mapping[str, Any] = field(default_factory=dict)
    templar: "Templar | None" = None
    base_dir: Path = field(default_factory=Path.cwd)
    package_manager: "PackageManager | None" = None
    service_manager: "ServiceManager | None" = None

    async def run(
        self,
        command: str,
        *,
        check: bool = True,
        become: bool | None = None,
        stdin: str | None = None,
    ) -> CommandResult:
        """Run a command on the host.

        Raises:
            RemoteExecutionError: If ``check`` is set and the command exits nonzero
        """
        result = await self.channel.execute(
            command,
            become=self.become if become is None else become,
            stdin=stdin,
            timeout=self.timeout,
        )
        if check and result.rc != 0:
            raise RemoteExecutionError(
                f"Command failed with rc={result.rc}: {result.stderr.strip() or command}",
                rc=result.rc,
                stdout=result.stdout,
                stderr=result.stderr,
                cmd=command,
            )
        return result

    async def succeeds(self, command: str) -> bool:
        """Whether a read-only probe command exits zero."""
        return (await self.run(command, check=False)).rc == 0

    async def exists(self, path: str) -> bool:
        return await self.succeeds(f"test -e {q(path)}")

    async def stat(self, path: str) -> RemoteStat | None:
        """Stat a path without following symlinks; None when absent."""
        if not await self.succeeds(f"test -e {q(path)} -o -L {q(path)}"):
            return None
        result = await self.run(STAT_COMMAND.format(path=q(path)))
        return parse_stat(result.stdout)

    async def checksum(self, path: str) -> str | None:
        """sha256 of a remote file; None when it cannot be read."""
        result = await self.run(CHECKSUM_COMMAND.format(path=q(path)), check=False)
        if result.rc != 0 or not result.stdout.strip():
            return None
        return result.stdout.split()[0]

    def temp_path(self, suffix: str = "") -> str:
        return f"{REMOTE_TMP}/.converge-{uuid.uuid4().hex}{suffix}"

    async def upload(self, content: bytes, suffix: str = "") -> str:
        """Upload bytes to a fresh temp path as the login user."""
        tmp = self.temp_path(suffix)
        await self.channel.put_file(content, tmp, mode=0o600)
        return tmp

    async def write_file(self, content: bytes, dest: str, current: RemoteStat | None = None) -> None:
        """Replace ``dest`` with ``content``.

        The content is uploaded to a temp file, copied next to the
        destination, then renamed over it so readers never see a partial
        file. An existing destination keeps its mode (and ownership when
        escalated); new files get 0644. The temp upload is always removed.
        """
        tmp = await self.upload(content)
        stage = f"{dest}.converge-tmp-{uuid.uuid4().hex[:8]}"
        try:
            await self.run(f"cp {q(tmp)} {q(stage)}")
            try:
                await self.run(f"chmod {(current.mode if current else DEFAULT_FILE_MODE):o} {q(stage)}")
                if current is not None and self.become:
                    await self.run(f"chown {q(current.owner)}:{q(current.group)} {q(stage)}")
                await self.run(f"mv -f {q(stage)} {q(dest)}")
            except RemoteExecutionError:
                await self.run(f"rm -f {q(stage)}", check=False)
                raise
        finally:
            await self.run(f"rm -f {q(tmp)}", check=False, become=False)

    async def apply_attributes(
        self,
        path: str,
        mode: int | None = None,
        owner: str | None = None,
        group: str | None = None,
        current: RemoteStat | None = None,
    ) -> list[str]:
        """Bring mode/owner/group in line; return the attributes changed."""
        if mode is None and not owner and not group:
            return []
        current = current or await self.stat(path)
        if current is None:
            raise PreconditionFailedError(f"Path does not exist: {path}", path=path)

        changed = []
        if mode is not None and current.mode != mode:
            await self.run(f"chmod {mode:o} {q(path)}")
            changed.append("mode")
        if owner and current.owner != owner:
            await self.run(f"chown {q(owner)} {q(path)}")
            changed.append("owner")
        if group and current.group != group:
            await self.run(f"chgrp {q(group)} {q(path)}")
            changed.append("group")
        return changed

    def local_path(self, path: str) -> Path:
        """Resolve a controller-side path against ``base_dir``."""
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.base_dir / p
