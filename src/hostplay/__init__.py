"""hostplay - a minimal idempotent remote task runner.

Runs one playbook (an ordered list of tasks) against the hosts of an
inventory over SSH, gathers a few facts per host, stores task results and
renders per-host reports from templates.

Example:
    >>> import asyncio
    >>> from hostplay import ConnectionProvider, PlaybookExecutor, load_inventory, load_playbook
    >>> from hostplay.host_filter import select_hosts
    >>> playbook = load_playbook("site.yml")
    >>> hosts = select_hosts(load_inventory("inventory.yml"), playbook.hosts)
    >>> results = asyncio.run(PlaybookExecutor(ConnectionProvider()).run(playbook, hosts))
"""

__version__ = "0.1.0"

from .connection import ConnectionProvider
from .exceptions import HostplayError
from .executor import PlaybookExecutor, RunResults
from .inventory import Inventory, load_inventory
from .playbook import Playbook, load_playbook
from .types import HostConfig, TaskResult, TaskStatus

__all__ = [
    "__version__",
    "ConnectionProvider",
    "HostConfig",
    "HostplayError",
    "Inventory",
    "Playbook",
    "PlaybookExecutor",
    "RunResults",
    "TaskResult",
    "TaskStatus",
    "load_inventory",
    "load_playbook",
]
