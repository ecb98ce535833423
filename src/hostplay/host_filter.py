"""Host selection for hostplay.

A playbook's ``hosts`` pattern picks the targets from the inventory and
``--limit`` narrows them further. Both accept comma-separated parts:

- Exact hostnames: web01,web02
- Glob patterns: web*
- Exclusion patterns: !db*, !@canary
- Group names: @webservers (in a playbook ``hosts`` pattern a bare group
  name works too, as does ``all``)
"""

import fnmatch
from collections.abc import Collection
from dataclasses import dataclass, field

from .exceptions import InventoryError
from .inventory import ALL_GROUP, Inventory
from .types import HostConfig

GLOB_CHARS = ("*", "?", "[")


@dataclass
class HostPattern:
    """A parsed host pattern.

    Attributes:
        exact: Host names to include
        globs: Glob patterns to include
        excludes: Glob patterns to exclude
        groups: Group names to include
        exclude_groups: Group names to exclude
    """

    exact: set[str] = field(default_factory=set)
    globs: set[str] = field(default_factory=set)
    excludes: set[str] = field(default_factory=set)
    groups: set[str] = field(default_factory=set)
    exclude_groups: set[str] = field(default_factory=set)

    @property
    def has_includes(self) -> bool:
        return bool(self.exact or self.globs or self.groups)


def parse_limit_pattern(pattern: str | None) -> HostPattern:
    """Parse a comma-separated host pattern."""
    parsed = HostPattern()
    if not pattern:
        return parsed

    for part in pattern.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("!@"):
            parsed.exclude_groups.add(part[2:])
        elif part.startswith("!"):
            parsed.excludes.add(part[1:])
        elif part.startswith("@"):
            parsed.groups.add(part[1:])
        elif any(c in part for c in GLOB_CHARS):
            parsed.globs.add(part)
        else:
            parsed.exact.add(part)
    return parsed


def match_host(
    hostname: str,
    pattern: HostPattern,
    group_members: Collection[str] = (),
    excluded_members: Collection[str] = (),
) -> bool:
    """Check if a hostname passes a pattern.

    Exclusions win. A pattern with only exclusions includes every other host.
    """
    if hostname in excluded_members:
        return False
    if any(fnmatch.fnmatch(hostname, excluded) for excluded in pattern.excludes):
        return False
    if not pattern.has_includes:
        return True
    if hostname in pattern.exact or hostname in group_members:
        return True
    return any(fnmatch.fnmatch(hostname, glob) for glob in pattern.globs)


def _group_members(inventory: Inventory | None, group_names: Collection[str]) -> set[str]:
    members: set[str] = set()
    if inventory is not None:
        for group_name in group_names:
            members.update(h.name for h in inventory.get_group_hosts(group_name))
    return members


def filter_hosts(
    hosts: list[HostConfig],
    limit_pattern: str | None,
    inventory: Inventory | None = None,
) -> list[HostConfig]:
    """Filter hosts by a limit pattern, keeping their order.

    Examples:
        filter_hosts(hosts, "web01,web02")
        filter_hosts(hosts, "web*,!web03")
        filter_hosts(hosts, "@webservers", inventory)
    """
    if not limit_pattern:
        return list(hosts)

    pattern = parse_limit_pattern(limit_pattern)
    members = _group_members(inventory, pattern.groups)
    excluded = _group_members(inventory, pattern.exclude_groups)

    return [host for host in hosts if match_host(host.name, pattern, members, excluded)]


def select_hosts(inventory: Inventory, hosts_pattern: str = ALL_GROUP, limit: str | None = None) -> list[HostConfig]:
    """Resolve a playbook ``hosts`` pattern, then apply ``--limit``.

    Bare words in the hosts pattern name a group when the inventory has
    one by that name, otherwise a host.

    Raises:
        InventoryError: If the hosts pattern names nothing in the inventory
    """
    all_hosts = list(inventory.get_all_hosts().values())
    pattern = parse_limit_pattern(hosts_pattern)

    for name in list(pattern.exact):
        if name == ALL_GROUP or name in inventory.groups:
            pattern.exact.discard(name)
            pattern.groups.add(name)

    for group_name in pattern.groups | pattern.exclude_groups:
        if group_name != ALL_GROUP and group_name not in inventory.groups:
            raise InventoryError(f"Unknown group in hosts pattern: {group_name}")
    members = _group_members(inventory, pattern.groups)
    excluded = _group_members(inventory, pattern.exclude_groups)

    unknown = pattern.exact - set(inventory.get_all_hosts())
    if unknown:
        raise InventoryError(f"Unknown host(s) in hosts pattern: {', '.join(sorted(unknown))}")

    selected = [host for host in all_hosts if match_host(host.name, pattern, members, excluded)]
    return filter_hosts(selected, limit, inventory)


def format_filter_summary(original_count: int, filtered_count: int, limit_pattern: str) -> str:
    """Human-readable summary of what a limit pattern kept."""
    if filtered_count == original_count:
        return f"All {original_count} host(s) matched filter: {limit_pattern}"
    excluded = original_count - filtered_count
    return f"Filter '{limit_pattern}': {filtered_count}/{original_count} hosts ({excluded} excluded)"
