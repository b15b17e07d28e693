"""Exception hierarchy for converge.

Errors fall into three families that the execution engine treats
differently:

- Load-time errors (inventory, playbook, config, templates) are raised
  before anything is dispatched and abort the run.
- Module errors (``ModuleError`` and subclasses) become a ``failed`` Result
  scoped to one (host, task) and never affect sibling hosts.
- Transport errors (``HostUnreachableError``) become an ``unreachable``
  Result and exclude the host from the rest of the play.
"""

from dataclasses import dataclass
from typing import Any


class ConvergeError(Exception):
    """Base class for every error raised by converge."""


class ConfigError(ConvergeError):
    """Raised when a run configuration file or override is invalid."""


@dataclass
class InventoryIssue:
    """A single problem found while parsing an inventory document.

    Attributes:
        line: 1-based line number in the source document (0 when unknown)
        message: Human-readable description of the problem
    """

    line: int
    message: str

    def __str__(self) -> str:
        if self.line:
            return f"line {self.line}: {self.message}"
        return self.message


class InventoryError(ConvergeError):
    """Raised when an inventory document cannot be parsed.

    All problems found in the document are collected and reported together.
    """

    def __init__(self, issues: list[InventoryIssue], source: str = "") -> None:
        self.issues = issues
        self.source = source
        where = f" in {source}" if source else ""
        lines = "\n".join(f"  {issue}" for issue in issues)
        super().__init__(f"Invalid inventory{where}:\n{lines}")


class UnknownGroupError(ConvergeError):
    """Raised when a play or filter references a group the inventory lacks."""

    def __init__(self, group: str) -> None:
        super().__init__(f"Unknown inventory group: {group}")
        self.group = group


class PlaybookError(ConvergeError):
    """Raised when a playbook document is structurally invalid."""

    def __init__(self, message: str, play: str | None = None, task: str | None = None) -> None:
        location = []
        if play is not None:
            location.append(f"play '{play}'")
        if task is not None:
            location.append(f"task '{task}'")
        prefix = f"{', '.join(location)}: " if location else ""
        super().__init__(f"{prefix}{message}")
        self.play = play
        self.task = task


class TemplateError(ConvergeError):
    """Raised when a template has a syntax error or references an undefined name."""


class LookupFailedError(TemplateError):
    """Raised when ``lookup(kind, arg)`` cannot produce a value."""

    def __init__(self, kind: str, arg: str, reason: str) -> None:
        super().__init__(f"lookup('{kind}', '{arg}') failed: {reason}")
        self.kind = kind
        self.arg = arg


class HostUnreachableError(ConvergeError):
    """Raised when the transport to a host fails (connect, lost session)."""

    def __init__(self, host: str, reason: str) -> None:
        super().__init__(f"{host} unreachable: {reason}")
        self.host = host
        self.reason = reason


class NotFoundError(ConvergeError):
    """Raised by the backup selector when no entry matches a name pattern."""

    def __init__(self, pattern: str) -> None:
        super().__init__(f"No entry matches pattern: {pattern}")
        self.pattern = pattern


class ModuleError(ConvergeError):
    """Raised when a module fails.

    This exception automatically creates a result dict with failed=True.

    Attributes:
        msg: Human-readable error message
        result: Result dict with failed=True and any additional fields

    Example:
        raise ModuleError("File not found", path="/tmp/missing.txt")
        # Creates result: {"failed": True, "msg": "File not found", "path": "/tmp/missing.txt"}
    """

    error_type = "ModuleError"

    def __init__(self, msg: str, **result_fields: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.result: dict[str, Any] = {
            "failed": True,
            "msg": msg,
            "error_type": self.error_type,
            **result_fields,
        }

    def __str__(self) -> str:
        return self.msg


class PreconditionFailedError(ModuleError):
    """A module's inputs are not satisfiable (missing source file, bad state)."""

    error_type = "PreconditionFailed"


class PermissionDeniedError(ModuleError):
    """Privilege escalation was required but could not be obtained."""

    error_type = "PermissionDenied"


class RemoteExecutionError(ModuleError):
    """A remote command exited nonzero."""

    error_type = "RemoteExecutionError"

    def __init__(self, msg: str, rc: int = -1, stdout: str = "", stderr: str = "", **result_fields: Any) -> None:
        super().__init__(msg, rc=rc, stdout=stdout, stderr=stderr, **result_fields)
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr


class TaskTimeoutError(ModuleError):
    """A remote command or module ran past its allotted time."""

    error_type = "Timeout"


class UnknownModuleError(ModuleError):
    """Raised when a requested module is not found in the registry."""

    error_type = "UnknownModule"

    def __init__(self, module_name: str) -> None:
        super().__init__(
            f"Module '{module_name}' not found",
            module=module_name,
        )
