"""Progress reporting for hostplay.

Reporters receive callbacks from the executor as hosts and tasks complete.
Text output goes through a rich Console, JSON output is NDJSON; both write
to stderr by default so stdout stays clean for results.

Also includes render_recap() which prints the end-of-run recap table.
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from .executor import RunResults


@dataclass
class ProgressEvent:
    """A progress event during a run.

    Attributes:
        event_type: Type of event (run_start, host_start, task_complete, ...)
        host: Host name, or "*" for run-level events
        timestamp: When the event occurred
        details: Additional event-specific details
    """

    event_type: str
    host: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        result = {
            "event": self.event_type,
            "host": self.host,
            "timestamp": self.timestamp,
        }
        result.update(self.details)
        return result

    def to_json(self) -> str:
        """Convert to JSON string (NDJSON format)."""
        return json.dumps(self.to_dict())


class ProgressReporter(ABC):
    """Base class for progress reporters."""

    @abstractmethod
    def on_run_start(self, total_hosts: int, playbook: str) -> None:
        """Called when the run starts."""

    @abstractmethod
    def on_host_start(self, host: str) -> None:
        """Called when a host worker starts."""

    @abstractmethod
    def on_host_retry(self, host: str, attempt: int, max_attempts: int, error: str, delay: float) -> None:
        """Called before waiting to retry a host connection."""

    @abstractmethod
    def on_task_complete(
        self,
        host: str,
        task: str,
        status: str,
        changed: bool = False,
        reason: str | None = None,
    ) -> None:
        """Called when a task reaches a final state on a host."""

    @abstractmethod
    def on_host_complete(self, host: str, success: bool, status_line: str, duration: float) -> None:
        """Called when a host's task sequence is over."""

    @abstractmethod
    def on_run_complete(self, total: int, successful: int, failed: int, duration: float) -> None:
        """Called when the run completes."""


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        self.output = output or sys.stderr

    def _emit(self, event_type: str, host: str, **details: Any) -> None:
        event = ProgressEvent(
            event_type=event_type,
            host=host,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details,
        )
        print(event.to_json(), file=self.output, flush=True)

    def on_run_start(self, total_hosts: int, playbook: str) -> None:
        self._emit("run_start", "*", total_hosts=total_hosts, playbook=playbook)

    def on_host_start(self, host: str) -> None:
        self._emit("host_start", host)

    def on_host_retry(self, host: str, attempt: int, max_attempts: int, error: str, delay: float) -> None:
        self._emit(
            "host_retry",
            host,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
            delay=round(delay, 1),
        )

    def on_task_complete(
        self,
        host: str,
        task: str,
        status: str,
        changed: bool = False,
        reason: str | None = None,
    ) -> None:
        details: dict[str, Any] = {"task": task, "status": status, "changed": changed}
        if reason:
            details["reason"] = reason
        self._emit("task_complete", host, **details)

    def on_host_complete(self, host: str, success: bool, status_line: str, duration: float) -> None:
        self._emit(
            "host_complete",
            host,
            success=success,
            status_line=status_line,
            duration=round(duration, 3),
        )

    def on_run_complete(self, total: int, successful: int, failed: int, duration: float) -> None:
        self._emit(
            "run_complete",
            "*",
            total=total,
            successful=successful,
            failed=failed,
            duration=round(duration, 3),
        )


STATUS_STYLES = {
    "Succeeded": "green",
    "Skipped": "cyan",
    "Failed": "red",
}


class TextProgressReporter(ProgressReporter):
    """Reports progress as human-readable text."""

    def __init__(self, output: Any = None) -> None:
        self.console = Console(file=output or sys.stderr, highlight=False, markup=False)
        self.completed = 0
        self.total = 0

    def on_run_start(self, total_hosts: int, playbook: str) -> None:
        self.total = total_hosts
        self.completed = 0
        self.console.print(f"Running playbook '{playbook}' on {total_hosts} host(s)...")

    def on_host_start(self, host: str) -> None:
        pass

    def on_host_retry(self, host: str, attempt: int, max_attempts: int, error: str, delay: float) -> None:
        self.console.print(
            f"  retry {host}: retrying in {delay:.0f}s "
            f"(attempt {attempt}/{max_attempts}): {error}"
        )

    def on_task_complete(
        self,
        host: str,
        task: str,
        status: str,
        changed: bool = False,
        reason: str | None = None,
    ) -> None:
        line = Text(f"  [{host}] ")
        label = "changed" if changed and status == "Succeeded" else status.lower()
        line.append(label, style=STATUS_STYLES.get(status, ""))
        line.append(f": {task}")
        if reason:
            line.append(f" ({reason})", style="dim")
        self.console.print(line)

    def on_host_complete(self, host: str, success: bool, status_line: str, duration: float) -> None:
        self.completed += 1
        line = Text(f"  [{self.completed}/{self.total}] ")
        line.append("ok" if success else "FAILED", style="green" if success else "red")
        line.append(f" {host}: {status_line} ({duration:.2f}s)")
        self.console.print(line)

    def on_run_complete(self, total: int, successful: int, failed: int, duration: float) -> None:
        if failed == 0:
            self.console.print(f"Completed: {successful}/{total} succeeded in {duration:.2f}s")
        else:
            self.console.print(f"Completed: {successful}/{total} succeeded, {failed} failed in {duration:.2f}s")


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_run_start(self, total_hosts: int, playbook: str) -> None:
        pass

    def on_host_start(self, host: str) -> None:
        pass

    def on_host_retry(self, host: str, attempt: int, max_attempts: int, error: str, delay: float) -> None:
        pass

    def on_task_complete(
        self,
        host: str,
        task: str,
        status: str,
        changed: bool = False,
        reason: str | None = None,
    ) -> None:
        pass

    def on_host_complete(self, host: str, success: bool, status_line: str, duration: float) -> None:
        pass

    def on_run_complete(self, total: int, successful: int, failed: int, duration: float) -> None:
        pass


def create_progress_reporter(
    enabled: bool,
    json_format: bool = False,
    output: Any = None,
) -> ProgressReporter:
    """Create a progress reporter.

    Args:
        enabled: Whether progress reporting is enabled
        json_format: Use JSON format instead of text
        output: Output stream (defaults to sys.stderr)
    """
    if not enabled:
        return NullProgressReporter()
    if json_format:
        return JsonProgressReporter(output)
    return TextProgressReporter(output)


def status_lines(results: "RunResults") -> list[str]:
    """One ``<host>: <status>`` line per host, in inventory order."""
    return [f"{name}: {outcome.status_line()}" for name, outcome in results.hosts.items()]


def render_recap(results: "RunResults", console: Console | None = None) -> None:
    """Print the per-host status lines followed by a recap table."""
    console = console or Console(highlight=False, markup=False)

    for name, outcome in results.hosts.items():
        style = "red" if outcome.failed else "green"
        console.print(Text(f"{name}: {outcome.status_line()}", style=style))

    table = Table(title="Recap", show_lines=False)
    table.add_column("Host")
    table.add_column("Succeeded", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")

    for name, outcome in results.hosts.items():
        counts = outcome.counts()
        table.add_row(
            name,
            str(counts["succeeded"]),
            str(counts["changed"]),
            str(counts["skipped"]),
            Text(str(counts["failed"]), style="red" if counts["failed"] else ""),
        )
    console.print(table)

    mode = " (check mode)" if results.check_mode else ""
    console.print(
        f"{results.successful}/{len(results.hosts)} host(s) succeeded{mode} "
        f"in {results.duration:.2f}s"
    )
