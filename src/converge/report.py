"""Run report: per-host tallies and the ordered list of task results.

The report is the only structure shared by concurrently running host
workers; every write goes through ``add`` which holds an asyncio lock.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console
from rich.table import Table

from .types import TaskResult, TaskStatus

STAT_FIELDS = ("ok", "changed", "unreachable", "failed", "skipped", "ignored")


@dataclass
class HostStats:
    """Outcome counts for one host."""

    ok: int = 0
    changed: int = 0
    unreachable: int = 0
    failed: int = 0
    skipped: int = 0
    ignored: int = 0

    def record(self, result: TaskResult) -> None:
        if result.ignored:
            self.ignored += 1
        else:
            setattr(self, result.status.value, getattr(self, result.status.value) + 1)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.unreachable > 0

    def to_dict(self) -> dict[str, int]:
        return {name: getattr(self, name) for name in STAT_FIELDS}


@dataclass
class RunReport:
    """Aggregated outcome of a playbook run.

    Attributes:
        hosts: Per-host stats, in first-seen order
        results: Every task result, in completion order
        cancelled: Whether the run was cancelled or timed out
        started: Monotonic start time
        finished: Monotonic end time (None while running)

    Example:
        >>> report = RunReport()
        >>> report.add_nowait(TaskResult(host="web01", task="install",
        ...                              module="package", status=TaskStatus.OK))
        >>> report.hosts["web01"].ok
        1
    """

    hosts: dict[str, HostStats] = field(default_factory=dict)
    results: list[TaskResult] = field(default_factory=list)
    cancelled: bool = False
    started: float = field(default_factory=time.monotonic)
    finished: float | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def add(self, result: TaskResult) -> None:
        """Record a result; safe to call from concurrent host workers."""
        async with self._lock:
            self.add_nowait(result)

    def add_nowait(self, result: TaskResult) -> None:
        self.results.append(result)
        self.stats_for(result.host).record(result)

    def stats_for(self, host: str) -> HostStats:
        """Stats entry for a host, created on first use."""
        return self.hosts.setdefault(host, HostStats())

    def finish(self) -> None:
        self.finished = time.monotonic()

    @property
    def duration(self) -> float:
        return (self.finished or time.monotonic()) - self.started

    def has_failures(self) -> bool:
        """Whether any host has a failed (not ignored) or unreachable result."""
        return any(stats.has_failures for stats in self.hosts.values())

    def totals(self) -> HostStats:
        total = HostStats()
        for stats in self.hosts.values():
            for name in STAT_FIELDS:
                setattr(total, name, getattr(total, name) + getattr(stats, name))
        return total

    def results_for(self, host: str, status: TaskStatus | None = None) -> list[TaskResult]:
        return [
            r for r in self.results
            if r.host == host and (status is None or r.status == status)
        ]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "hosts": {name: stats.to_dict() for name, stats in self.hosts.items()},
            "totals": self.totals().to_dict(),
            "results": [r.to_dict() for r in self.results],
            "cancelled": self.cancelled,
            "duration": round(self.duration, 3),
            "success": not self.has_failures() and not self.cancelled,
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def render(self, console: Console | None = None) -> None:
        """Print the recap table."""
        console = console or Console()
        table = Table(title="Play recap", show_lines=False)
        table.add_column("host", style="bold")
        for name, style in zip(STAT_FIELDS, ("green", "yellow", "red", "red", "cyan", "magenta")):
            table.add_column(name, justify="right", style=style)

        for host, stats in self.hosts.items():
            table.add_row(host, *(str(getattr(stats, name)) for name in STAT_FIELDS))
        console.print(table)

        if self.cancelled:
            console.print("[bold red]Run cancelled; results reflect the state reached.[/bold red]")
        console.print(f"Finished in {self.duration:.2f}s")
