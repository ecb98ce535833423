"""Shared fixtures: an in-memory channel that behaves like a small Linux host."""

import hashlib
import shlex
from typing import Any

import pytest

from hostplay.connection import Channel, CommandResult, ConnectionProvider
from hostplay.exceptions import ConnectionError
from hostplay.types import HostConfig

UBUNTU_RELEASE = 'NAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\nID_LIKE=debian\n'
ROCKY_RELEASE = 'NAME="Rocky Linux"\nVERSION_ID="9.3"\nID="rocky"\nID_LIKE="rhel centos fedora"\n'

QUERY_PREFIXES = (
    ("hostname",),
    ("cat",),
    ("uname",),
    ("date",),
    ("dpkg-query",),
    ("rpm", "-q"),
    ("apk", "info"),
    ("pacman", "-Q"),
    ("systemctl", "is-active"),
    ("systemctl", "is-enabled"),
    ("sha256sum",),
)

INSTALL_VERBS = {"install", "add", "-S"}
REMOVE_VERBS = {"remove", "del", "-R"}


class FakeChannel(Channel):
    """Channel backed by dictionaries instead of a real host.

    Attributes:
        commands: Every command run, in order
        mutations: Commands and file writes that changed state
        responses: Exact command -> CommandResult overrides
    """

    def __init__(
        self,
        name: str = "web01",
        os_release: str = UBUNTU_RELEASE,
        packages: set[str] | None = None,
        available: set[str] | None = None,
        services: dict[str, dict[str, bool]] | None = None,
        files: dict[str, bytes] | None = None,
        dirs: set[str] | None = None,
        local: bool = False,
    ) -> None:
        self.name = name
        self.os_release = os_release
        self.packages = set(packages or ())
        self.available = set(available) if available is not None else {"nginx", "curl", "git"}
        self.services = services if services is not None else {"nginx": {"active": False, "enabled": False}}
        self.files = dict(files or {})
        self.dirs = set(dirs or {"/", "/tmp", "/etc", "/opt"})
        self.modes: dict[str, int] = {}
        self.commands: list[str] = []
        self.mutations: list[str] = []
        self.responses: dict[str, CommandResult] = {}
        self.broken = False
        self.closed = False
        self._local = local

    @property
    def is_local(self) -> bool:
        return self._local

    def ran(self, fragment: str) -> list[str]:
        return [command for command in self.commands if fragment in command]

    async def run(self, command: str, stdin: str = "", timeout: float | None = None) -> CommandResult:
        if self.broken:
            raise ConnectionError(f"Channel to {self.name} lost", self.name)
        self.commands.append(command)
        if command in self.responses:
            return self.responses[command]
        return self._dispatch(self._unwrap(command))

    def _unwrap(self, command: str) -> list[str]:
        tokens = shlex.split(command)
        if tokens[:2] == ["sudo", "-n"]:
            tokens = tokens[2:]
        if tokens[:2] == ["sh", "-c"]:
            return self._unwrap(tokens[2])
        while tokens and "=" in tokens[0] and not tokens[0].startswith("-"):
            tokens = tokens[1:]
        return tokens

    def _dispatch(self, tokens: list[str]) -> CommandResult:
        if not any(tuple(tokens[: len(prefix)]) == prefix for prefix in QUERY_PREFIXES):
            self.mutations.append(" ".join(tokens))

        program = tokens[0] if tokens else ""
        if program == "hostname":
            return CommandResult(0, f"{self.name}\n")
        if program == "cat" and tokens[1:] == ["/etc/os-release"]:
            return CommandResult(0, self.os_release)
        if program == "uname":
            return CommandResult(0, "6.8.0-45-generic\n")
        if program == "date":
            return CommandResult(0, "2026-10-19 12:00:00 UTC\n")
        if program == "dpkg-query":
            name = tokens[-1]
            if name in self.packages:
                return CommandResult(0, "install ok installed")
            return CommandResult(1, "", f"dpkg-query: no packages found matching {name}\n")
        if tokens[:2] in (["rpm", "-q"], ["apk", "info"], ["pacman", "-Q"]):
            return CommandResult(0 if tokens[-1] in self.packages else 1)
        if program in ("apt-get", "dnf", "zypper", "apk", "pacman"):
            return self._package(tokens)
        if program == "systemctl":
            return self._systemctl(tokens)
        if program == "mkdir":
            self.dirs.add(tokens[-1])
            return CommandResult(0)
        if program == "chmod":
            self.modes[tokens[2]] = int(tokens[1], 8)
            return CommandResult(0)
        if program == "mktemp":
            path = tokens[-1].replace("XXXXXXXX", "k3J9x2Qa")
            self.files[path] = b""
            return CommandResult(0, f"{path}\n")
        if program == "mv":
            self.files[tokens[2]] = self.files.pop(tokens[1])
            return CommandResult(0)
        if program == "sha256sum":
            content = self.files.get(tokens[1])
            if content is None:
                return CommandResult(1, "", "No such file\n")
            return CommandResult(0, f"{hashlib.sha256(content).hexdigest()}  {tokens[1]}\n")
        return CommandResult(0, "")

    def _package(self, tokens: list[str]) -> CommandResult:
        names = [t for t in tokens[1:] if not t.startswith("-") and t not in INSTALL_VERBS | REMOVE_VERBS]
        if INSTALL_VERBS.intersection(tokens):
            missing = [name for name in names if name not in self.available]
            if missing:
                return CommandResult(100, "", f"E: Unable to locate package {missing[0]}\n")
            self.packages.update(names)
        else:
            self.packages.difference_update(names)
        return CommandResult(0, f"Processed {' '.join(names)}\n")

    def _systemctl(self, tokens: list[str]) -> CommandResult:
        verb, name = tokens[1], tokens[-1]
        service = self.services.get(name)
        if verb == "is-active":
            return CommandResult(0 if service and service["active"] else 3)
        if verb == "is-enabled":
            return CommandResult(0 if service and service["enabled"] else 1)
        if service is None:
            return CommandResult(5, "", f"Failed to {verb} {name}.service: Unit {name}.service not found.\n")
        if verb in ("start", "restart"):
            service["active"] = True
        elif verb == "stop":
            service["active"] = False
        elif verb == "enable":
            service["enabled"] = True
        elif verb == "disable":
            service["enabled"] = False
        return CommandResult(0)

    async def read_file(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path: str, content: bytes, mode: int | None = None) -> None:
        if self.broken:
            raise ConnectionError(f"Channel to {self.name} lost", self.name)
        self.files[path] = content
        if mode is not None:
            self.modes[path] = mode
        self.mutations.append(f"write {path}")

    async def stat(self, path: str) -> dict[str, Any]:
        if path in self.dirs:
            return {
                "exists": True,
                "isdir": True,
                "size": 4096,
                "mode": oct(self.modes.get(path, 0o755)),
                "mtime": 0.0,
                "checksum": None,
            }
        if path in self.files:
            content = self.files[path]
            return {
                "exists": True,
                "isdir": False,
                "size": len(content),
                "mode": oct(self.modes.get(path, 0o644)),
                "mtime": 0.0,
                "checksum": hashlib.sha256(content).hexdigest(),
            }
        return {"exists": False}

    async def close(self) -> None:
        self.closed = True


class FakeProvider(ConnectionProvider):
    """Provider handing out FakeChannels.

    Attributes:
        channels: Host name -> channel, created on first open if missing
        unreachable: Host name -> error type for hosts that refuse to connect
        opens: Host names in the order open() was called
    """

    def __init__(
        self,
        channels: dict[str, FakeChannel] | None = None,
        unreachable: dict[str, str] | None = None,
        controller: Channel | None = None,
    ) -> None:
        super().__init__()
        self.channels = channels if channels is not None else {}
        self.unreachable = dict(unreachable or {})
        self.opens: list[str] = []
        self._fake_controller = controller

    async def open(self, host: HostConfig) -> Channel:
        self.opens.append(host.name)
        if host.name in self.unreachable:
            raise ConnectionError(
                f"Connection to {host.address}:{host.port} refused",
                host.name,
                self.unreachable[host.name],
            )
        if host.name not in self.channels:
            self.channels[host.name] = FakeChannel(host.name)
        return self.channels[host.name]

    def controller(self) -> Channel:
        if self._fake_controller is not None:
            return self._fake_controller
        return super().controller()


def make_hosts(*names: str) -> list[HostConfig]:
    return [HostConfig(name=name, address=f"10.0.0.{i}", user="deploy") for i, name in enumerate(names, 1)]


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()
