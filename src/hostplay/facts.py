"""Fact gathering for hostplay.

A fixed battery of read-only probes is run once per host per run. A probe
that fails is recorded as unavailable and never stops the others.
"""

import logging
import shlex
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable

from .connection import Channel
from .exceptions import ProbeError

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S %Z"

# /etc/os-release ID (or ID_LIKE entry) to OS family
OS_FAMILIES = {
    "debian": "Debian",
    "ubuntu": "Debian",
    "linuxmint": "Debian",
    "raspbian": "Debian",
    "rhel": "RedHat",
    "centos": "RedHat",
    "fedora": "RedHat",
    "rocky": "RedHat",
    "almalinux": "RedHat",
    "amzn": "RedHat",
    "ol": "RedHat",
    "suse": "Suse",
    "opensuse": "Suse",
    "sles": "Suse",
    "alpine": "Alpine",
    "arch": "Archlinux",
}


@dataclass
class FactSet:
    """Facts gathered from one host.

    Every fact is None when its probe failed; the reason is kept in
    ``unavailable`` under the probe name.
    """

    hostname: str | None = None
    distribution: str | None = None
    os_family: str | None = None
    os_version: str | None = None
    kernel: str | None = None
    date: str | None = None
    time: str | None = None
    timezone: str | None = None
    unavailable: dict[str, str] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        value = getattr(self, name, None) if name in FACT_NAMES else None
        return default if value is None else value

    def to_dict(self) -> dict[str, Any]:
        data = {name: getattr(self, name) for name in FACT_NAMES}
        data["unavailable"] = dict(self.unavailable)
        return data


FACT_NAMES = tuple(f.name for f in fields(FactSet) if f.name != "unavailable")


def parse_os_release(text: str) -> dict[str, str]:
    """Parse KEY=value lines of /etc/os-release."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw.strip("\"'")]
        values[key] = parts[0] if parts else ""
    return values


def os_family_for(os_id: str, id_like: str = "") -> str:
    """Map os-release ID/ID_LIKE to an OS family name."""
    for candidate in [os_id, *id_like.split()]:
        family = OS_FAMILIES.get(candidate.lower())
        if family:
            return family
    return os_id.capitalize() if os_id else "Unknown"


async def _command(channel: Channel, probe: str, command: str) -> str:
    result = await channel.run(command)
    if not result.ok:
        reason = result.stderr.strip() or f"exit status {result.rc}"
        raise ProbeError(probe, reason, channel.name)
    output = result.stdout.strip()
    if not output:
        raise ProbeError(probe, "empty output", channel.name)
    return output


async def probe_hostname(channel: Channel, facts: FactSet) -> None:
    facts.hostname = await _command(channel, "hostname", "hostname")


async def probe_os_release(channel: Channel, facts: FactSet) -> None:
    values = parse_os_release(await _command(channel, "os_release", "cat /etc/os-release"))
    if "ID" not in values:
        raise ProbeError("os_release", "no ID in /etc/os-release", channel.name)
    facts.distribution = values.get("NAME") or values["ID"]
    facts.os_version = values.get("VERSION_ID")
    facts.os_family = os_family_for(values["ID"], values.get("ID_LIKE", ""))


async def probe_kernel(channel: Channel, facts: FactSet) -> None:
    facts.kernel = await _command(channel, "kernel", "uname -r")


async def probe_datetime(channel: Channel, facts: FactSet) -> None:
    output = await _command(channel, "datetime", f"date {shlex.quote('+' + DATE_FORMAT)}")
    parts = output.split()
    if len(parts) < 2:
        raise ProbeError("datetime", f"unexpected output: {output!r}", channel.name)
    facts.date, facts.time = parts[0], parts[1]
    facts.timezone = parts[2] if len(parts) > 2 else None


Probe = Callable[[Channel, FactSet], Awaitable[None]]

PROBES: dict[str, Probe] = {
    "hostname": probe_hostname,
    "os_release": probe_os_release,
    "kernel": probe_kernel,
    "datetime": probe_datetime,
}


async def gather(channel: Channel) -> FactSet:
    """Run every probe against a channel.

    ConnectionError from the channel propagates; ProbeError is recorded.
    """
    facts = FactSet()
    for name, probe in PROBES.items():
        try:
            await probe(channel, facts)
        except ProbeError as e:
            logger.warning(f"[{channel.name}] {e}")
            facts.unavailable[name] = e.reason
    return facts


class FactCollector:
    """Caches one FactSet per host for the duration of a run."""

    def __init__(self) -> None:
        self._cache: dict[str, FactSet] = {}

    async def gather(self, host_name: str, channel: Channel) -> FactSet:
        if host_name not in self._cache:
            self._cache[host_name] = await gather(channel)
            logger.debug(f"[{host_name}] Gathered facts: {self._cache[host_name].to_dict()}")
        return self._cache[host_name]

    def get(self, host_name: str) -> FactSet | None:
        return self._cache.get(host_name)

    def clear(self) -> None:
        self._cache.clear()
