"""Inventory loading for hostplay.

Inventories use the Ansible layout, as YAML (groups with ``hosts``
mappings, ``vars`` and ``children``) or as JSON (``--list`` output with
``_meta.hostvars``). Connection settings are read from the usual
``ansible_*`` keys; everything else becomes a host variable.

Variable precedence for a host, lowest first: the ``all`` group, parent
groups, the host's own groups, then the host's own variables.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import InventoryError
from .types import HostConfig

logger = logging.getLogger(__name__)

ALL_GROUP = "all"

# inventory key -> HostConfig field
CONNECTION_KEYS = {
    "ansible_host": "address",
    "ansible_port": "port",
    "ansible_user": "user",
    "ansible_ssh_private_key_file": "key_file",
    "ansible_password": "password",
    "ansible_connection": "connection",
}

CONNECTION_TYPES = {"ssh", "local"}


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers")
        hosts: Hosts listed directly in this group
        vars: Group-level variables inherited by its hosts
        children: Names of child groups

    Example:
        >>> group = HostGroup(name="webservers", vars={"http_port": 80})
        >>> group.add_host(HostConfig(name="web01", address="10.0.0.5"))
    """

    name: str
    hosts: dict[str, HostConfig] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)

    def add_host(self, host: HostConfig) -> None:
        self.hosts[host.name] = host

    def get_host(self, name: str) -> HostConfig | None:
        return self.hosts.get(name)

    def list_hosts(self) -> list[HostConfig]:
        return list(self.hosts.values())


@dataclass
class Inventory:
    """Groups and hosts loaded from an inventory file.

    Example:
        >>> inventory = load_inventory("inventory.yml")
        >>> [h.name for h in inventory.get_group_hosts("webservers")]
        ['web01', 'web02']
    """

    groups: dict[str, HostGroup] = field(default_factory=dict)
    _all_hosts: dict[str, HostConfig] = field(default_factory=dict, init=False, repr=False)

    def add_group(self, group: HostGroup) -> None:
        self.groups[group.name] = group
        self._all_hosts = {}

    def get_group(self, name: str) -> HostGroup | None:
        return self.groups.get(name)

    def list_groups(self) -> list[HostGroup]:
        return list(self.groups.values())

    def get_all_hosts(self) -> dict[str, HostConfig]:
        """All unique hosts, in order of first appearance."""
        if not self._all_hosts:
            for group in self.groups.values():
                for name, host in group.hosts.items():
                    self._all_hosts.setdefault(name, host)
        return self._all_hosts

    def get_host(self, name: str) -> HostConfig | None:
        return self.get_all_hosts().get(name)

    def get_group_hosts(self, name: str) -> list[HostConfig]:
        """Hosts of a group including those of its child groups."""
        if name == ALL_GROUP:
            return list(self.get_all_hosts().values())

        found: dict[str, HostConfig] = {}
        pending = [name]
        seen: set[str] = set()
        while pending:
            group = self.groups.get(pending.pop(0))
            if group is None or group.name in seen:
                continue
            seen.add(group.name)
            for host in group.hosts.values():
                found.setdefault(host.name, host)
            pending.extend(group.children)

        order = list(self.get_all_hosts())
        return sorted(found.values(), key=lambda h: order.index(h.name))


@dataclass
class _RawGroup:
    members: list[str] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)


def _as_dict(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InventoryError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _collect_group(
    name: str,
    data: Any,
    groups: dict[str, _RawGroup],
    host_vars: dict[str, dict[str, Any]],
) -> None:
    group = groups.setdefault(name, _RawGroup())
    data = _as_dict(data, f"Group '{name}'")

    hosts = data.get("hosts") or {}
    if isinstance(hosts, list):
        hosts = {host_name: None for host_name in hosts}
    for host_name, values in _as_dict(hosts, f"Hosts of group '{name}'").items():
        host_name = str(host_name)
        host_vars.setdefault(host_name, {}).update(_as_dict(values, f"Host '{host_name}'"))
        if host_name not in group.members:
            group.members.append(host_name)

    group.vars.update(_as_dict(data.get("vars"), f"Vars of group '{name}'"))

    children = data.get("children") or []
    if isinstance(children, dict):
        for child_name, child_data in children.items():
            _collect_group(str(child_name), child_data, groups, host_vars)
        children = list(children)
    elif not isinstance(children, list):
        raise InventoryError(f"Children of group '{name}' must be a list or mapping")
    for child_name in children:
        groups.setdefault(str(child_name), _RawGroup())
        if str(child_name) not in group.children:
            group.children.append(str(child_name))


def _group_depths(groups: dict[str, _RawGroup]) -> dict[str, int]:
    """Depth of each group below the top: ``all`` is 0, ungrouped top-level groups 1."""
    parents: dict[str, list[str]] = {name: [] for name in groups}
    for name, group in groups.items():
        for child in group.children:
            parents[child].append(name)

    depths: dict[str, int] = {}

    def depth(name: str, path: tuple[str, ...] = ()) -> int:
        if name in path:
            raise InventoryError(f"Group cycle: {' -> '.join((*path, name))}")
        if name not in depths:
            if name == ALL_GROUP:
                depths[name] = 0
            else:
                above = [depth(parent, (*path, name)) for parent in parents[name]]
                depths[name] = max(above, default=0) + 1
        return depths[name]

    for name in groups:
        depth(name)
    return depths


def _ancestors(name: str, groups: dict[str, _RawGroup]) -> set[str]:
    found: set[str] = set()
    pending = [name]
    while pending:
        current = pending.pop()
        for parent, group in groups.items():
            if current in group.children and parent not in found:
                found.add(parent)
                pending.append(parent)
    return found


def _host_from_vars(host_name: str, values: dict[str, Any]) -> HostConfig:
    """Create a HostConfig from merged host variables.

    Connection keys are consumed; the remaining keys become host vars.
    """
    settings: dict[str, Any] = {}
    for key, attr in CONNECTION_KEYS.items():
        if values.get(key) is not None:
            settings[attr] = values[key]

    if "port" in settings:
        try:
            settings["port"] = int(settings["port"])
        except (TypeError, ValueError):
            raise InventoryError(f"Host '{host_name}': invalid port {settings['port']!r}") from None
    connection = settings.get("connection", "ssh")
    if connection not in CONNECTION_TYPES:
        raise InventoryError(f"Host '{host_name}': unsupported connection '{connection}'")

    for attr in ("address", "user", "key_file", "password"):
        if attr in settings:
            settings[attr] = str(settings[attr])

    return HostConfig(
        name=host_name,
        address=settings.pop("address", host_name),
        vars={k: v for k, v in values.items() if k not in CONNECTION_KEYS},
        **settings,
    )


def _build_inventory(
    groups: dict[str, _RawGroup],
    host_vars: dict[str, dict[str, Any]],
    require_hosts: bool = True,
) -> Inventory:
    depths = _group_depths(groups)
    memberships: dict[str, set[str]] = {name: set() for name in host_vars}
    for name, group in groups.items():
        for host_name in group.members:
            memberships[host_name].add(name)
            memberships[host_name] |= _ancestors(name, groups)

    hosts: dict[str, HostConfig] = {}
    for host_name, own_vars in host_vars.items():
        names = memberships[host_name] | ({ALL_GROUP} if ALL_GROUP in groups else set())
        merged: dict[str, Any] = {}
        for name in sorted(names, key=lambda n: (depths[n], n)):
            merged.update(groups[name].vars)
        merged.update(own_vars)
        hosts[host_name] = _host_from_vars(host_name, merged)

    inventory = Inventory()
    for name, raw in groups.items():
        group = HostGroup(name=name, vars=dict(raw.vars), children=list(raw.children))
        for host_name in raw.members:
            group.add_host(hosts[host_name])
        inventory.add_group(group)

    if require_hosts and not hosts:
        raise InventoryError("No hosts loaded from inventory")
    return inventory


def load_inventory_data(data: Any, require_hosts: bool = True) -> Inventory:
    """Build an inventory from parsed YAML or JSON data.

    Example:
        >>> data = {
        ...     "webservers": {"hosts": ["web01"]},
        ...     "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1"}}},
        ... }
        >>> load_inventory_data(data).get_host("web01").address
        '10.0.0.1'
    """
    data = _as_dict(data, "Inventory")
    groups: dict[str, _RawGroup] = {}
    host_vars: dict[str, dict[str, Any]] = {}

    meta = _as_dict(data.get("_meta"), "_meta")
    for group_name, group_data in data.items():
        if group_name == "_meta":
            continue
        _collect_group(str(group_name), group_data, groups, host_vars)

    for host_name, values in _as_dict(meta.get("hostvars"), "_meta.hostvars").items():
        if host_name in host_vars:
            host_vars[host_name].update(_as_dict(values, f"Host '{host_name}'"))

    return _build_inventory(groups, host_vars, require_hosts)


def load_inventory(inventory_file: str | Path, require_hosts: bool = True) -> Inventory:
    """Load an inventory file, detecting JSON by content and YAML otherwise.

    Raises:
        InventoryError: If the file is missing, unparsable, malformed or
            (with require_hosts) holds no hosts
    """
    path = Path(inventory_file)
    try:
        content = path.read_text()
    except FileNotFoundError:
        raise InventoryError(f"Inventory not found: {path}") from None

    try:
        if content.lstrip().startswith("{"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InventoryError(f"Cannot parse inventory {path}: {e}") from e

    inventory = load_inventory_data(data, require_hosts=require_hosts)
    logger.debug(
        f"Loaded inventory {path}: {len(inventory.groups)} group(s), "
        f"{len(inventory.get_all_hosts())} host(s)"
    )
    return inventory
