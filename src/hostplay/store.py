"""Fact/result store for a playbook run.

Results are kept per host under the task name. Run-once tasks publish
their result into a run-scoped partition that every host can read. Keys are
write-once: the store is append-only during a run and read-only once
frozen for rendering.
"""

import asyncio
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any, Awaitable, Callable

from .exceptions import StoreError


class _Absent:
    """Marker for a key that has no value in the store."""

    _instance: "_Absent | None" = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "Absent"


ABSENT: Any = _Absent()


class ResultStore:
    """Write-once mapping from (host, key) to a task result.

    Each host partition has a single writer (its worker coroutine), so no
    locking is needed for put().

    Example:
        >>> store = ResultStore()
        >>> store.put("web01", "install nginx", result)
        >>> store.get("web01", "install nginx") is result
        True
        >>> store.get("web02", "install nginx")
        Absent
    """

    def __init__(self) -> None:
        self._hosts: dict[str, dict[str, Any]] = {}
        self._run: dict[str, Any] = {}
        self._frozen = False

    def _check_writable(self) -> None:
        if self._frozen:
            raise StoreError("Result store is frozen")

    def put(self, host: str, key: str, value: Any) -> None:
        """Record a value for a host.

        Raises:
            StoreError: If the key already exists for this host or in the
                run partition, or the store is frozen
        """
        self._check_writable()
        partition = self._hosts.setdefault(host, {})
        if key in partition or key in self._run:
            raise StoreError(f"Key '{key}' already recorded for host '{host}'", host)
        partition[key] = value

    def get(self, host: str, key: str, default: Any = ABSENT) -> Any:
        """Look up a key for a host, falling back to the run partition."""
        partition = self._hosts.get(host, {})
        if key in partition:
            return partition[key]
        return self._run.get(key, default)

    def publish(self, key: str, value: Any) -> None:
        """Record a run-scoped value visible to every host.

        Raises:
            StoreError: If the key was already published or the store is frozen
        """
        self._check_writable()
        if key in self._run:
            raise StoreError(f"Key '{key}' already published for this run")
        self._run[key] = value

    def get_published(self, key: str, default: Any = ABSENT) -> Any:
        return self._run.get(key, default)

    def keys(self, host: str) -> list[str]:
        """Keys visible to a host, run partition first."""
        return [*self._run, *self._hosts.get(host, {})]

    def snapshot(self, host: str, visible: Iterable[str] | None = None) -> Mapping[str, Any]:
        """Immutable view of what a host can see.

        Args:
            host: Host whose partition to overlay on the run partition
            visible: Restrict the view to these keys (the names of tasks
                ordered before the one being evaluated)
        """
        merged = {**self._run, **self._hosts.get(host, {})}
        if visible is not None:
            allowed = set(visible)
            merged = {k: v for k, v in merged.items() if k in allowed}
        return MappingProxyType(merged)

    def hosts(self) -> list[str]:
        return list(self._hosts)

    def freeze(self) -> None:
        """Make the store read-only."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def clear(self) -> None:
        """Empty the store for a new run."""
        self._hosts.clear()
        self._run.clear()
        self._frozen = False


class RunOnceCell:
    """Write-once cell guarded by a lock.

    The first caller of get_or_run() executes the factory while holding the
    lock; every later caller waits for the lock and receives the cached
    value without executing anything.

    Example:
        cell = RunOnceCell()
        value, executed = await cell.get_or_run(download)
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._value: Any = ABSENT
        self.owner: str | None = None

    @property
    def is_set(self) -> bool:
        return self._value is not ABSENT

    @property
    def value(self) -> Any:
        return self._value

    async def get_or_run(
        self,
        factory: Callable[[], Awaitable[Any]],
        owner: str | None = None,
    ) -> tuple[Any, bool]:
        """Return (value, executed) where executed is True for the caller that ran it.

        If the factory raises, the exception propagates and the cell stays
        empty.
        """
        async with self._lock:
            if self.is_set:
                return self._value, False
            self._value = await factory()
            self.owner = owner
            return self._value, True
