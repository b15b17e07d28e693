"""Type definitions for converge.

This module defines the core data types shared by the inventory, the
execution engine, the modules and the report: hosts, command results and
per-task results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass
class HostConfig:
    """Connection and identity details for a single inventory host.

    Attributes:
        name: Inventory alias (e.g., "web01")
        address: Hostname or IP address to connect to
        port: SSH port number (default: 22)
        remote_user: Login user; empty means the transport default
        connection: "ssh" for remote hosts, "local" for the controller itself
        become: Default privilege escalation flag for this host
        python_interpreter: Python interpreter path on the host
        shell: Shell used for ``shell`` tasks and escalation wrappers
        groups: Names of every group this host belongs to (including ancestors)
        vars: Host-specific variables

    Example:
        >>> host = HostConfig(name="web01", address="192.168.1.10", remote_user="deploy")
        >>> host.port
        22
        >>> host.is_local
        False
    """

    name: str
    address: str
    port: int = 22
    remote_user: str = ""
    connection: str = "ssh"
    become: bool = False
    python_interpreter: str = "python3"
    shell: str = "/bin/sh"
    groups: set[str] = field(default_factory=set)
    vars: dict[str, Any] = field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        """Check if this host uses local execution (no SSH)."""
        return self.connection == "local"

    @property
    def is_remote(self) -> bool:
        """Check if this host uses remote execution (SSH)."""
        return not self.is_local

    def connection_key(self) -> tuple[str, int, str, str]:
        """Attributes that must agree when a host is listed in several groups."""
        return (self.address, self.port, self.remote_user, self.connection)


@dataclass
class CommandResult:
    """Outcome of one command run through a channel."""

    rc: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.rc == 0


class TaskStatus(str, Enum):
    """Terminal state of one (host, task, loop item) execution."""

    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


@dataclass
class TaskResult:
    """Result of one (host, task, loop item) execution.

    Attributes:
        host: Inventory name of the host
        task: Task display name
        module: Module identifier the task invoked
        status: Terminal status
        output: Module output payload
        error: Error message when failed or unreachable
        item: Loop item bound for this execution (None outside loops)
        ignored: True when the task failed but ``ignore_errors`` was set
        play: Name of the play the task belongs to
        duration: Wall-clock seconds spent dispatching the task

    Example:
        >>> result = TaskResult(host="web01", task="install", module="package",
        ...                     status=TaskStatus.CHANGED)
        >>> result.changed
        True
    """

    host: str
    task: str
    module: str
    status: TaskStatus
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    item: Any = None
    ignored: bool = False
    play: str = ""
    duration: float = 0.0

    @property
    def changed(self) -> bool:
        return self.status == TaskStatus.CHANGED

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status == TaskStatus.SKIPPED

    @property
    def unreachable(self) -> bool:
        return self.status == TaskStatus.UNREACHABLE

    def registered(self) -> dict[str, Any]:
        """Value stored in the scope when the task has ``register`` set."""
        data = dict(self.output)
        data["changed"] = self.changed
        data["failed"] = self.failed
        data["skipped"] = self.skipped
        data["unreachable"] = self.unreachable
        data["status"] = self.status.value
        if self.error and "msg" not in data:
            data["msg"] = self.error
        return data

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "play": self.play,
            "host": self.host,
            "task": self.task,
            "module": self.module,
            "status": self.status.value,
            "output": self.output,
            "duration": round(self.duration, 3),
        }
        if self.item is not None:
            result["item"] = self.item
        if self.error:
            result["error"] = self.error
        if self.ignored:
            result["ignored"] = True
        return result
