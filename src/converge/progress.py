"""Progress reporting for converge.

Provides callback-based progress tracking for playbook runs, supporting
both text and JSON output formats.
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape

from .types import TaskResult, TaskStatus


@dataclass
class ProgressEvent:
    """A progress event during execution.

    Attributes:
        event_type: Type of event (play_start, task_start, task_result, play_complete)
        host: Host name ("*" for play-wide events)
        timestamp: When the event occurred
        details: Additional event-specific details
    """

    event_type: str
    host: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event": self.event_type,
            "host": self.host,
            "timestamp": self.timestamp,
        }
        result.update(self.details)
        return result

    def to_json(self) -> str:
        """Convert to JSON string (NDJSON format)."""
        return json.dumps(self.to_dict(), default=str)


class ProgressReporter(ABC):
    """Base class for progress reporters."""

    @abstractmethod
    def on_play_start(self, play: str, hosts: list[str]) -> None:
        """Called when a play starts."""
        pass

    @abstractmethod
    def on_task_start(self, host: str, task: str) -> None:
        """Called before a task is dispatched to a host."""
        pass

    @abstractmethod
    def on_task_result(self, result: TaskResult) -> None:
        """Called when a (host, task, item) result is final."""
        pass

    @abstractmethod
    def on_play_complete(self, play: str, duration: float, cancelled: bool = False) -> None:
        """Called when a play completes."""
        pass


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        """Initialize JSON progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr to not pollute stdout)
        """
        self.output = output or sys.stderr

    def _emit(self, event: ProgressEvent) -> None:
        print(event.to_json(), file=self.output, flush=True)

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        self._emit(ProgressEvent("play_start", "*", self._now(), {"play": play, "hosts": hosts}))

    def on_task_start(self, host: str, task: str) -> None:
        self._emit(ProgressEvent("task_start", host, self._now(), {"task": task}))

    def on_task_result(self, result: TaskResult) -> None:
        details = result.to_dict()
        details.pop("host")
        self._emit(ProgressEvent("task_result", result.host, self._now(), details))

    def on_play_complete(self, play: str, duration: float, cancelled: bool = False) -> None:
        self._emit(ProgressEvent(
            "play_complete",
            "*",
            self._now(),
            {"play": play, "duration": round(duration, 3), "cancelled": cancelled},
        ))


STATUS_STYLES = {
    TaskStatus.OK: "green",
    TaskStatus.CHANGED: "yellow",
    TaskStatus.SKIPPED: "cyan",
    TaskStatus.FAILED: "red",
    TaskStatus.UNREACHABLE: "bold red",
}


class TextProgressReporter(ProgressReporter):
    """Reports progress as human-readable text."""

    def __init__(self, output: Any = None, verbose: bool = False) -> None:
        """Initialize text progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr)
            verbose: Also print module output for every result
        """
        self.console = Console(file=output or sys.stderr, highlight=False)
        self.verbose = verbose

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        self.console.print(f"[bold]PLAY {escape('[' + play + ']')}[/bold] on {len(hosts)} host(s)")

    def on_task_start(self, host: str, task: str) -> None:
        # Don't emit for start in text mode to reduce noise
        pass

    def on_task_result(self, result: TaskResult) -> None:
        style = STATUS_STYLES[result.status]
        label = "ignored" if result.ignored else result.status.value
        item = f" (item={escape(str(result.item))})" if result.item is not None else ""
        line = f"  [{style}]{label}[/{style}]: {escape('[' + result.host + ']')} {escape(result.task)}{item}"
        if result.error:
            line += f": {escape(result.error)}"
        self.console.print(line)
        if self.verbose and result.output:
            self.console.print_json(json.dumps(result.output, default=str))

    def on_play_complete(self, play: str, duration: float, cancelled: bool = False) -> None:
        suffix = " [red](cancelled)[/red]" if cancelled else ""
        self.console.print(f"Play '{escape(play)}' finished in {duration:.2f}s{suffix}")


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        pass

    def on_task_start(self, host: str, task: str) -> None:
        pass

    def on_task_result(self, result: TaskResult) -> None:
        pass

    def on_play_complete(self, play: str, duration: float, cancelled: bool = False) -> None:
        pass


def create_progress_reporter(
    enabled: bool,
    json_format: bool = False,
    output: Any = None,
    verbose: bool = False,
) -> ProgressReporter:
    """Create a progress reporter.

    Args:
        enabled: Whether progress reporting is enabled
        json_format: Use JSON format instead of text
        output: Output stream (defaults to sys.stderr)
        verbose: Text reporter prints module output too

    Returns:
        ProgressReporter instance
    """
    if not enabled:
        return NullProgressReporter()
    if json_format:
        return JsonProgressReporter(output)
    return TextProgressReporter(output, verbose=verbose)
