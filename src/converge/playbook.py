"""Playbook documents: plays and tasks.

A playbook is a YAML list of plays. Each play targets an inventory group
and holds an ordered list of tasks; each task names exactly one module.
The whole document is validated before anything runs, so structural
mistakes surface as a ``PlaybookError`` rather than a half-applied run.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import ERROR_POLICIES
from .exceptions import PlaybookError
from .modules import ModuleRegistry, default_registry

logger = logging.getLogger(__name__)

PLAY_KEYS = {"name", "hosts", "become", "gather_facts", "error_policy", "vars", "defaults", "tasks"}

TASK_KEYWORDS = {
    "name",
    "when",
    "loop",
    "loop_control",
    "register",
    "become",
    "changed_when",
    "failed_when",
    "ignore_errors",
    "timeout",
    "no_log",
    "vars",
}

DEFAULT_LOOP_VAR = "item"


@dataclass
class Task:
    """One declarative action.

    Attributes:
        module: Module identifier
        args: Module arguments (may contain templates)
        name: Display name
        when: Condition (expression string, bool or list of expressions)
        loop: Items (list or template resolving to a list)
        loop_var: Name the current item is bound to
        register: Variable name that captures the task's result
        become: Per-task escalation override (None inherits the play's)
        changed_when: Expression overriding change detection
        failed_when: Expression overriding failure detection
        ignore_errors: Keep the host going when the task fails
        timeout: Per-task timeout override in seconds
        no_log: Hide module output in reports and logs
        vars: Task-level variables
    """

    module: str
    args: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    when: Any = None
    loop: Any = None
    loop_var: str = DEFAULT_LOOP_VAR
    register: str | None = None
    become: bool | None = None
    changed_when: Any = None
    failed_when: Any = None
    ignore_errors: bool = False
    timeout: int | None = None
    no_log: bool = False
    vars: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.module


@dataclass
class Play:
    """A named, ordered list of tasks targeted at inventory groups.

    ``gather_facts`` and ``error_policy`` of None defer to the run config.
    """

    name: str
    hosts: list[str]
    tasks: list[Task] = field(default_factory=list)
    become: bool = False
    gather_facts: bool | None = None
    error_policy: str | None = None
    vars: dict[str, Any] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)


@dataclass
class Playbook:
    """Parsed playbook document.

    Attributes:
        plays: Plays in document order
        source: Where the document came from
        base_dir: Directory relative file references resolve against
    """

    plays: list[Play] = field(default_factory=list)
    source: str = ""
    base_dir: Path = field(default_factory=Path.cwd)


def _mapping(value: Any, what: str, play: str | None, task: str | None = None) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PlaybookError(f"'{what}' must be a mapping", play=play, task=task)
    return dict(value)


def _flag(value: Any, what: str, play: str | None, task: str | None = None) -> bool:
    if isinstance(value, bool):
        return value
    raise PlaybookError(f"'{what}' must be true or false", play=play, task=task)


def parse_task(data: Any, index: int, play_name: str, registry: ModuleRegistry) -> Task:
    """Validate one task entry and build a Task."""
    label = f"#{index + 1}"
    if not isinstance(data, dict):
        raise PlaybookError(f"task {label} must be a mapping", play=play_name)
    label = str(data.get("name") or label)

    module_keys = [k for k in data if k not in TASK_KEYWORDS]
    if not module_keys:
        raise PlaybookError("no module specified", play=play_name, task=label)
    if len(module_keys) > 1:
        raise PlaybookError(
            f"exactly one module per task, found: {', '.join(map(str, module_keys))}",
            play=play_name,
            task=label,
        )
    module = str(module_keys[0])
    if module not in registry:
        raise PlaybookError(f"unknown module or task keyword '{module}'", play=play_name, task=label)
    spec = registry.get(module)

    raw_args = data[module]
    if raw_args is None:
        args: dict[str, Any] = {}
    elif isinstance(raw_args, dict):
        args = dict(raw_args)
    elif spec.free_form is not None:
        args = {spec.free_form: raw_args}
    else:
        raise PlaybookError(f"module '{module}' arguments must be a mapping", play=play_name, task=label)

    loop_control = _mapping(data.get("loop_control"), "loop_control", play_name, label)
    unknown = set(loop_control) - {"loop_var"}
    if unknown:
        raise PlaybookError(f"unknown loop_control key(s): {', '.join(sorted(unknown))}", play=play_name, task=label)

    loop = data.get("loop")
    if loop is not None and not isinstance(loop, (list, str)):
        raise PlaybookError("'loop' must be a list or a template", play=play_name, task=label)

    register = data.get("register")
    if register is not None and (not isinstance(register, str) or not register.isidentifier()):
        raise PlaybookError(f"invalid register name: {register!r}", play=play_name, task=label)

    timeout = data.get("timeout")
    if timeout is not None and (not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0):
        raise PlaybookError("'timeout' must be a positive integer", play=play_name, task=label)

    return Task(
        module=spec.name,
        args=args,
        name=str(data.get("name") or ""),
        when=data.get("when"),
        loop=loop,
        loop_var=str(loop_control.get("loop_var", DEFAULT_LOOP_VAR)),
        register=register,
        become=_flag(data["become"], "become", play_name, label) if "become" in data else None,
        changed_when=data.get("changed_when"),
        failed_when=data.get("failed_when"),
        ignore_errors=_flag(data.get("ignore_errors", False), "ignore_errors", play_name, label),
        timeout=timeout,
        no_log=_flag(data.get("no_log", False), "no_log", play_name, label),
        vars=_mapping(data.get("vars"), "vars", play_name, label),
    )


def parse_play(data: Any, index: int, registry: ModuleRegistry) -> Play:
    """Validate one play entry and build a Play."""
    if not isinstance(data, dict):
        raise PlaybookError(f"play #{index + 1} must be a mapping")
    name = str(data.get("name") or f"play #{index + 1}")

    unknown = set(data) - PLAY_KEYS
    if unknown:
        raise PlaybookError(f"unknown play key(s): {', '.join(sorted(map(str, unknown)))}", play=name)

    hosts = data.get("hosts")
    if isinstance(hosts, str):
        targets = [h.strip() for h in hosts.split(",") if h.strip()]
    elif isinstance(hosts, list) and all(isinstance(h, str) for h in hosts):
        targets = list(hosts)
    else:
        raise PlaybookError("'hosts' must be a group name or a list of group names", play=name)
    if not targets:
        raise PlaybookError("'hosts' is empty", play=name)

    error_policy = data.get("error_policy")
    if error_policy is not None and error_policy not in ERROR_POLICIES:
        raise PlaybookError(
            f"error_policy must be one of {', '.join(ERROR_POLICIES)}, got {error_policy}", play=name
        )

    raw_tasks = data.get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise PlaybookError("'tasks' must be a list", play=name)

    gather = data.get("gather_facts")
    return Play(
        name=name,
        hosts=targets,
        tasks=[parse_task(t, i, name, registry) for i, t in enumerate(raw_tasks)],
        become=_flag(data.get("become", False), "become", name),
        gather_facts=None if gather is None else _flag(gather, "gather_facts", name),
        error_policy=error_policy,
        vars=_mapping(data.get("vars"), "vars", name),
        defaults=_mapping(data.get("defaults"), "defaults", name),
    )


def parse_playbook(
    content: str,
    source: str = "",
    base_dir: str | Path | None = None,
    registry: ModuleRegistry | None = None,
) -> Playbook:
    """Parse a playbook document.

    An empty document, or an empty list, is a valid playbook with no plays.

    Raises:
        PlaybookError: If the document is not valid YAML or not well formed
    """
    registry = registry or default_registry()
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PlaybookError(f"invalid YAML in {source or 'playbook'}: {e}") from e

    if data is None:
        data = []
    if not isinstance(data, list):
        raise PlaybookError("a playbook must be a list of plays")

    plays = [parse_play(p, i, registry) for i, p in enumerate(data)]
    return Playbook(
        plays=plays,
        source=source,
        base_dir=Path(base_dir) if base_dir else Path.cwd(),
    )


def load_playbook(path: str | Path, registry: ModuleRegistry | None = None) -> Playbook:
    """Load a playbook file; relative lookups resolve against its directory.

    Raises:
        PlaybookError: If the file cannot be read or is not a valid playbook
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise PlaybookError(f"cannot read playbook {path}: {e}") from e

    playbook = parse_playbook(content, source=str(path), base_dir=path.parent.resolve(), registry=registry)
    logger.debug(f"Loaded playbook {path}: {len(playbook.plays)} play(s)")
    return playbook
