"""Host limiting for converge runs.

A limit pattern narrows the hosts a play targets. It is a comma-separated
list of:
- exact host names: web01,web02
- glob patterns: web*
- exclusions: !db*
- groups: @webservers
"""

import fnmatch
from dataclasses import dataclass, field

from .inventory import Inventory
from .types import HostConfig

GLOB_CHARS = ("*", "?", "[")


@dataclass
class LimitPattern:
    """Parsed form of a ``--limit`` expression."""

    exact: set[str] = field(default_factory=set)
    globs: set[str] = field(default_factory=set)
    excludes: set[str] = field(default_factory=set)
    groups: set[str] = field(default_factory=set)

    @property
    def has_includes(self) -> bool:
        return bool(self.exact or self.globs or self.groups)


def parse_limit_pattern(pattern: str) -> LimitPattern:
    """Split a limit expression into its include/exclude parts."""
    parsed = LimitPattern()
    for part in (pattern or "").split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("!"):
            parsed.excludes.add(part[1:])
        elif part.startswith("@"):
            parsed.groups.add(part[1:])
        elif any(c in part for c in GLOB_CHARS):
            parsed.globs.add(part)
        else:
            parsed.exact.add(part)
    return parsed


def match_host(hostname: str, limit: LimitPattern, group_members: set[str] | None = None) -> bool:
    """Check whether a host passes the limit.

    Exclusions always win; with no include parts every non-excluded host
    passes.
    """
    if any(fnmatch.fnmatch(hostname, p) for p in limit.excludes):
        return False
    if not limit.has_includes:
        return True
    if hostname in limit.exact:
        return True
    if group_members and hostname in group_members:
        return True
    return any(fnmatch.fnmatch(hostname, p) for p in limit.globs)


def filter_hosts(
    hosts: list[HostConfig],
    limit_pattern: str | None,
    inventory: Inventory | None = None,
) -> list[HostConfig]:
    """Filter hosts by a limit expression, preserving order.

    Examples:
        filter_hosts(hosts, "web*,!web03")
        filter_hosts(hosts, "@webservers", inventory)
    """
    if not limit_pattern:
        return hosts

    limit = parse_limit_pattern(limit_pattern)
    group_members: set[str] = set()
    if limit.groups and inventory is not None:
        for group_name in limit.groups:
            if group_name in inventory.groups:
                group_members.update(h.name for h in inventory.resolve(group_name))

    return [h for h in hosts if match_host(h.name, limit, group_members)]


def format_filter_summary(original_count: int, filtered_count: int, limit_pattern: str) -> str:
    """One-line description of what a limit did."""
    if filtered_count == original_count:
        return f"All {original_count} host(s) matched filter: {limit_pattern}"
    excluded = original_count - filtered_count
    return (
        f"Filter '{limit_pattern}': {filtered_count}/{original_count} hosts "
        f"({excluded} excluded)"
    )
