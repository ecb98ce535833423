"""Type definitions for hostplay.

Core data types shared by the inventory, the executor and the report
renderer: hosts, task states and task results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from getpass import getuser
from typing import Any

from .exceptions import HostplayError


@dataclass
class HostConfig:
    """A target host taken from the inventory.

    Attributes:
        name: Unique inventory name (e.g., "web01")
        address: Hostname or IP used for the SSH connection
        port: SSH port (default: 22)
        user: Remote login user (default: current user)
        key_file: Path to the private key used for authentication
        password: Password used when no key file is given
        connection: "ssh" for remote hosts, "local" for the controller itself
        vars: Host variables, already merged with group variables
        os_family: Resolved by the first fact gather, None until then

    Example:
        >>> host = HostConfig(name="web01", address="10.0.0.5", user="deploy")
        >>> host.is_local
        False
        >>> host.os_family is None
        True
    """

    name: str
    address: str
    port: int = 22
    user: str = field(default_factory=getuser)
    key_file: str | None = None
    password: str | None = None
    connection: str = "ssh"
    vars: dict[str, Any] = field(default_factory=dict)
    os_family: str | None = None

    @property
    def is_local(self) -> bool:
        """Check if this host runs commands on the controller (no SSH)."""
        return self.connection == "local"

    @property
    def is_remote(self) -> bool:
        """Check if this host is reached over SSH."""
        return not self.is_local

    def get_var(self, key: str, default: Any = None) -> Any:
        """Get a host variable by key with optional default."""
        return self.vars.get(key, default)

    def set_var(self, key: str, value: Any) -> None:
        """Set a host variable."""
        self.vars[key] = value

    def to_dict(self) -> dict[str, Any]:
        """Template-safe view of the host (no credentials)."""
        return {
            "name": self.name,
            "address": self.address,
            "port": self.port,
            "user": self.user,
            "os_family": self.os_family,
            "vars": dict(self.vars),
        }


class TaskStatus(str, Enum):
    """Lifecycle of one task on one host."""

    PENDING = "Pending"
    EVALUATING = "Evaluating"
    SKIPPED = "Skipped"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_final(self) -> bool:
        return self in (TaskStatus.SKIPPED, TaskStatus.SUCCEEDED, TaskStatus.FAILED)


TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.EVALUATING, TaskStatus.SKIPPED},
    TaskStatus.EVALUATING: {TaskStatus.SKIPPED, TaskStatus.RUNNING, TaskStatus.FAILED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED},
    TaskStatus.SKIPPED: set(),
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
}


def check_transition(current: TaskStatus, new: TaskStatus) -> None:
    """Raise HostplayError if moving from current to new is not allowed.

    Pending may jump straight to Skipped when a host halts before reaching
    the task. Evaluating may go to Failed when a run-once task published a
    failure. Running may end in Skipped when an install was already
    satisfied.
    """
    if new not in TRANSITIONS[current]:
        raise HostplayError(f"Illegal task transition: {current.value} -> {new.value}")


class HostStatus(str, Enum):
    """Overall state of a host's task sequence."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TaskResult:
    """Captured outcome of a task on a host.

    This is the value kept in the result store under the task name.

    Attributes:
        task_name: Name of the task (the store key)
        host_name: Host the task ran for
        status: Final TaskStatus
        changed: Whether the action modified state
        rc: Exit status of the last command, if any
        stdout: Captured standard output
        stderr: Captured standard error
        output: Structured data (stat metadata, checksums, report path)
        error: Error message if the task failed
        reason: Why the task was skipped, if it was
        executed_by: Host that actually executed a run-once task
        timestamp: When the result was captured (UTC, ISO 8601)
    """

    task_name: str
    host_name: str
    status: TaskStatus
    changed: bool = False
    rc: int | None = None
    stdout: str = ""
    stderr: str = ""
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    reason: str | None = None
    executed_by: str | None = None
    timestamp: str = field(default_factory=_now)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status == TaskStatus.SKIPPED

    @property
    def ok(self) -> bool:
        """True unless the task failed."""
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dict for templates and JSON export."""
        data: dict[str, Any] = {
            "task": self.task_name,
            "host": self.host_name,
            "status": self.status.value,
            "changed": self.changed,
            "rc": self.rc,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "output": self.output,
            "failed": self.failed,
            "skipped": self.skipped,
            "timestamp": self.timestamp,
        }
        if self.error:
            data["error"] = self.error
        if self.reason:
            data["reason"] = self.reason
        if self.executed_by:
            data["executed_by"] = self.executed_by
        return data
