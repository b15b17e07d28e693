"""Inventory management for converge.

Resolves named groups to hosts and merges the variables that apply to a
host. Inventory documents are YAML (or JSON of the same shape) with groups
at the top level:

    webservers:
      vars:
        http_port: 80
      children: [canary]
      hosts:
        web01:
          address: 10.0.0.1
          remote_user: deploy
    canary:
      hosts:
        web02:
          address: 10.0.0.2

Parsing problems are collected with their line numbers and reported
together in one ``InventoryError``.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import InventoryError, InventoryIssue, UnknownGroupError
from .types import HostConfig

logger = logging.getLogger(__name__)

ALL_GROUP = "all"

# Host keys that map onto HostConfig fields; aliases follow Ansible naming.
CONNECTION_KEYS = {
    "address": "address",
    "ansible_host": "address",
    "port": "port",
    "ansible_port": "port",
    "remote_user": "remote_user",
    "ansible_user": "remote_user",
    "connection": "connection",
    "ansible_connection": "connection",
    "become": "become",
    "python_interpreter": "python_interpreter",
    "ansible_python_interpreter": "python_interpreter",
    "shell": "shell",
}

GROUP_KEYS = {"hosts", "vars", "children"}


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers", "databases")
        hosts: Dictionary mapping host names to HostConfig objects
        vars: Group-level variables inherited by all hosts
        children: Child group names for hierarchical structures
    """

    name: str
    hosts: dict[str, HostConfig] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)

    def add_host(self, host: HostConfig) -> None:
        """Add a host to this group."""
        self.hosts[host.name] = host

    def list_hosts(self) -> list[HostConfig]:
        """Get all hosts directly in this group."""
        return list(self.hosts.values())


@dataclass
class Inventory:
    """Typed inventory: groups, hosts and variable precedence.

    Example:
        >>> inventory = Inventory()
        >>> web = HostGroup(name="webservers")
        >>> web.add_host(HostConfig(name="web01", address="192.168.1.10"))
        >>> inventory.add_group(web)
        >>> [h.name for h in inventory.resolve("webservers")]
        ['web01']
    """

    groups: dict[str, HostGroup] = field(default_factory=dict)
    _all_hosts: dict[str, HostConfig] = field(default_factory=dict, init=False, repr=False)
    _depths: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def add_group(self, group: HostGroup) -> None:
        """Add a group to the inventory."""
        self.groups[group.name] = group
        self._invalidate_cache()

    def get_group(self, name: str) -> HostGroup | None:
        """Get a group by name."""
        return self.groups.get(name)

    def list_groups(self) -> list[HostGroup]:
        """Get all groups."""
        return list(self.groups.values())

    def get_all_hosts(self) -> dict[str, HostConfig]:
        """Get all unique hosts across all groups, in first-seen order."""
        if not self._all_hosts:
            self._rebuild_cache()
        return self._all_hosts

    def get_host(self, name: str) -> HostConfig | None:
        """Get a host by inventory name."""
        return self.get_all_hosts().get(name)

    def resolve(self, group_name: str) -> list[HostConfig]:
        """Resolve a group to its hosts, including those of child groups.

        The order is first-seen order and only used for deterministic
        reporting. An existing group with no hosts resolves to an empty list.

        Raises:
            UnknownGroupError: If the group does not exist
        """
        if group_name == ALL_GROUP and ALL_GROUP not in self.groups:
            return list(self.get_all_hosts().values())
        if group_name not in self.groups:
            raise UnknownGroupError(group_name)

        resolved: dict[str, HostConfig] = {}
        seen: set[str] = set()
        stack = [group_name]
        while stack:
            name = stack.pop(0)
            if name in seen:
                continue
            seen.add(name)
            group = self.groups.get(name)
            if group is None:
                continue
            for host in group.list_hosts():
                resolved.setdefault(host.name, host)
            stack.extend(group.children)

        if group_name == ALL_GROUP:
            for name, host in self.get_all_hosts().items():
                resolved.setdefault(name, host)
        return list(resolved.values())

    def variables_for(
        self, host: HostConfig, extra_vars: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Merge the variables that apply to a host.

        Precedence, lowest first: the ``all`` group, ancestor groups
        (shallower first, alphabetical within a depth), host vars, extra vars.
        """
        if not self._depths:
            self._rebuild_cache()

        merged: dict[str, Any] = {}
        member_groups = [g for g in host.groups if g in self.groups]
        ordered = sorted(
            member_groups,
            key=lambda g: (-1 if g == ALL_GROUP else self._depths.get(g, 0), g),
        )
        for group_name in ordered:
            merged.update(self.groups[group_name].vars)
        merged.update(host.vars)
        if extra_vars:
            merged.update(extra_vars)
        return merged

    def _rebuild_cache(self) -> None:
        self._all_hosts = {}
        for group in self.groups.values():
            for host_name, host in group.hosts.items():
                if host_name not in self._all_hosts:
                    self._all_hosts[host_name] = host
        self._depths = _group_depths(self.groups)
        self._assign_memberships()

    def _assign_memberships(self) -> None:
        parents: dict[str, set[str]] = {}
        for group in self.groups.values():
            for child in group.children:
                parents.setdefault(child, set()).add(group.name)

        def ancestors(name: str, trail: frozenset[str] = frozenset()) -> set[str]:
            found = {name}
            for parent in parents.get(name, ()):
                if parent not in trail:
                    found |= ancestors(parent, trail | {name})
            return found

        for host in self._all_hosts.values():
            host.groups = {ALL_GROUP}
        for group in self.groups.values():
            for host in group.hosts.values():
                host.groups |= ancestors(group.name)

    def _invalidate_cache(self) -> None:
        self._all_hosts = {}
        self._depths = {}


def _group_depths(groups: dict[str, HostGroup]) -> dict[str, int]:
    """Longest distance of each group from a root group."""
    child_names = {child for g in groups.values() for child in g.children}
    depths: dict[str, int] = {}

    def visit(name: str, depth: int, trail: frozenset[str]) -> None:
        if name in trail or name not in groups:
            return
        if depths.get(name, -1) >= depth:
            return
        depths[name] = depth
        for child in groups[name].children:
            visit(child, depth + 1, trail | {name})

    for name in groups:
        if name not in child_names:
            visit(name, 0, frozenset())
    for name in groups:
        depths.setdefault(name, 0)
    return depths


class _Located(dict):
    """A mapping that remembers where it and each of its keys were defined."""

    line: int = 0
    key_lines: dict[Any, int]

    def line_of(self, key: Any) -> int:
        return getattr(self, "key_lines", {}).get(key, self.line)


class _LineLoader(yaml.SafeLoader):
    """SafeLoader that records line numbers and duplicate mapping keys."""

    def __init__(self, stream: Any) -> None:
        super().__init__(stream)
        self.issues: list[InventoryIssue] = []


def _construct_located_mapping(loader: _LineLoader, node: yaml.MappingNode) -> _Located:
    loader.flatten_mapping(node)
    mapping = _Located()
    mapping.line = node.start_mark.line + 1
    mapping.key_lines = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=True)
        line = key_node.start_mark.line + 1
        if key in mapping:
            loader.issues.append(
                InventoryIssue(line, f"duplicate key '{key}' (first defined on line {mapping.key_lines[key]})")
            )
            continue
        mapping[key] = loader.construct_object(value_node, deep=True)
        mapping.key_lines[key] = line
    return mapping


_LineLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_located_mapping
)


def _parse_yaml(content: str) -> tuple[Any, list[InventoryIssue]]:
    loader = _LineLoader(content)
    try:
        data = loader.get_single_data()
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        line = mark.line + 1 if mark is not None else 0
        return None, [InventoryIssue(line, f"invalid YAML: {getattr(e, 'problem', e)}")]
    finally:
        loader.dispose()
    return data, loader.issues


def _parse_json(content: str) -> tuple[Any, list[InventoryIssue]]:
    issues: list[InventoryIssue] = []

    def hook(pairs: list[tuple[str, Any]]) -> _Located:
        mapping = _Located()
        mapping.key_lines = {}
        for key, value in pairs:
            if key in mapping:
                issues.append(InventoryIssue(0, f"duplicate key '{key}'"))
                continue
            mapping[key] = value
        return mapping

    try:
        return json.loads(content, object_pairs_hook=hook), issues
    except json.JSONDecodeError as e:
        return None, [InventoryIssue(e.lineno, f"invalid JSON: {e.msg}")]


def parse_inventory(content: str, source: str = "") -> Inventory:
    """Parse inventory document text (YAML or JSON).

    Raises:
        InventoryError: With every issue found, each tagged with its line
    """
    if content.lstrip().startswith("{"):
        data, issues = _parse_json(content)
    else:
        data, issues = _parse_yaml(content)

    inventory = Inventory()
    if data is None:
        if issues:
            raise InventoryError(issues, source)
        return inventory
    if not isinstance(data, dict):
        raise InventoryError([InventoryIssue(1, "inventory must be a mapping of groups")], source)

    hosts_seen: dict[str, HostConfig] = {}
    for group_name, group_data in data.items():
        group_line = data.line_of(group_name) if isinstance(data, _Located) else 0
        if group_data is None:
            group_data = {}
        if not isinstance(group_data, dict):
            issues.append(InventoryIssue(group_line, f"group '{group_name}' must be a mapping"))
            continue

        group = HostGroup(name=str(group_name))
        for key in group_data:
            if key not in GROUP_KEYS:
                issues.append(
                    InventoryIssue(_line(group_data, key, group_line), f"unknown key '{key}' in group '{group_name}'")
                )

        hosts = group_data.get("hosts") or {}
        if not isinstance(hosts, dict):
            issues.append(
                InventoryIssue(_line(group_data, "hosts", group_line), f"hosts of group '{group_name}' must be a mapping")
            )
            hosts = {}
        for host_name, host_data in hosts.items():
            line = _line(hosts, host_name, group_line)
            host = _host_from_entry(str(host_name), host_data, line, hosts_seen, issues)
            if host is not None:
                group.add_host(host)

        group_vars = group_data.get("vars") or {}
        if isinstance(group_vars, dict):
            group.vars = _plain(group_vars)
        else:
            issues.append(
                InventoryIssue(_line(group_data, "vars", group_line), f"vars of group '{group_name}' must be a mapping")
            )

        children = group_data.get("children") or []
        if isinstance(children, dict):
            children = list(children.keys())
        if isinstance(children, list):
            group.children = [str(c) for c in children]
        else:
            issues.append(
                InventoryIssue(_line(group_data, "children", group_line), f"children of group '{group_name}' must be a list")
            )

        inventory.add_group(group)

    for group in inventory.list_groups():
        for child in group.children:
            if child not in inventory.groups:
                issues.append(InventoryIssue(0, f"group '{group.name}' has unknown child group '{child}'"))
    cycle = _find_cycle(inventory.groups)
    if cycle:
        issues.append(InventoryIssue(0, f"group children form a cycle: {' -> '.join(cycle)}"))

    if issues:
        raise InventoryError(issues, source)

    inventory.get_all_hosts()
    return inventory


def _line(mapping: Any, key: Any, default: int) -> int:
    if isinstance(mapping, _Located):
        return mapping.line_of(key) or default
    return default


def _plain(value: Any) -> Any:
    """Strip the line-tracking wrapper from nested mappings."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _host_from_entry(
    host_name: str,
    host_data: Any,
    line: int,
    hosts_seen: dict[str, HostConfig],
    issues: list[InventoryIssue],
) -> HostConfig | None:
    """Create (or re-reference) a HostConfig from one inventory host entry."""
    if host_data is None:
        host_data = {}
    if not isinstance(host_data, dict):
        issues.append(InventoryIssue(line, f"host '{host_name}' must map to a mapping of attributes"))
        return None

    existing = hosts_seen.get(host_name)
    if existing is not None and not host_data:
        return existing

    attrs: dict[str, Any] = {}
    host_vars: dict[str, Any] = {}
    for key, value in host_data.items():
        if key in CONNECTION_KEYS:
            attrs[CONNECTION_KEYS[key]] = value
        else:
            host_vars[key] = _plain(value)

    connection = str(attrs.get("connection", "ssh"))
    if connection not in ("ssh", "local"):
        issues.append(InventoryIssue(line, f"host '{host_name}' has unsupported connection '{connection}'"))
        return None

    address = attrs.get("address")
    if not address:
        if connection == "local":
            address = "127.0.0.1"
        elif existing is not None:
            address = existing.address
        else:
            issues.append(InventoryIssue(line, f"host '{host_name}' is missing 'address'"))
            return None

    try:
        port = int(attrs.get("port", existing.port if existing else 22))
    except (TypeError, ValueError):
        issues.append(InventoryIssue(line, f"host '{host_name}' has invalid port {attrs.get('port')!r}"))
        return None

    host = HostConfig(
        name=host_name,
        address=str(address),
        port=port,
        remote_user=str(attrs.get("remote_user", existing.remote_user if existing else "") or ""),
        connection=connection,
        become=bool(attrs.get("become", existing.become if existing else False)),
        python_interpreter=str(attrs.get("python_interpreter", "python3")),
        shell=str(attrs.get("shell", "/bin/sh")),
        vars=host_vars,
    )

    if existing is None:
        hosts_seen[host_name] = host
        return host

    if existing.connection_key() != host.connection_key():
        issues.append(
            InventoryIssue(line, f"host '{host_name}' redefined with different connection attributes")
        )
        return None
    existing.vars.update(host.vars)
    return existing


def _find_cycle(groups: dict[str, HostGroup]) -> list[str]:
    visiting: list[str] = []
    done: set[str] = set()

    def visit(name: str) -> list[str]:
        if name in visiting:
            return visiting[visiting.index(name):] + [name]
        if name in done or name not in groups:
            return []
        visiting.append(name)
        for child in groups[name].children:
            cycle = visit(child)
            if cycle:
                return cycle
        visiting.pop()
        done.add(name)
        return []

    for name in groups:
        cycle = visit(name)
        if cycle:
            return cycle
    return []


def load_inventory(inventory_file: str | Path) -> Inventory:
    """Load an inventory file, auto-detecting YAML or JSON.

    Raises:
        InventoryError: If the file cannot be read or parsed

    Example:
        >>> inventory = load_inventory("hosts.yml")
    """
    path = Path(inventory_file)
    try:
        content = path.read_text()
    except OSError as e:
        raise InventoryError([InventoryIssue(0, f"cannot read file: {e}")], str(path)) from e

    inventory = parse_inventory(content, source=str(path))
    logger.debug(
        f"Loaded inventory {path}: {len(inventory.groups)} group(s), "
        f"{len(inventory.get_all_hosts())} host(s)"
    )
    return inventory


def load_localhost() -> Inventory:
    """Generate a localhost-only inventory for local execution.

    Example:
        >>> inventory = load_localhost()
        >>> inventory.get_host("localhost").is_local
        True
    """
    all_group = HostGroup(name=ALL_GROUP)
    all_group.add_host(HostConfig(name="localhost", address="127.0.0.1", connection="local"))

    inventory = Inventory()
    inventory.add_group(all_group)
    return inventory
