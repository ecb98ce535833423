"""Action implementations for hostplay tasks.

Each action kind has one handler. Handlers query current state before
changing anything, so a repeated run reports "already satisfied" or
``changed=False`` instead of redoing work. In check mode, handlers still
run their read-only queries but never issue a mutating command.

Handlers raise ActionError on failure and return an ActionOutcome
otherwise.
"""

import dataclasses
import hashlib
import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from .connection import Channel, CommandResult
from .exceptions import ActionError
from .facts import FactSet
from .playbook import (
    Action,
    CopyAction,
    DirectoryAction,
    DownloadAction,
    PackageAction,
    ServiceAction,
    ShellAction,
    StatAction,
    TemplateAction,
)
from .report import ReportRenderer, build_context, render_value
from .types import HostConfig, TaskResult

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything a handler may use for one task on one host.

    Attributes:
        host: Target host
        channel: Channel of the task's execution site
        controller: Shared controller channel (source side of copies)
        facts: Facts gathered for the host
        variables: Merged play, host and extra variables
        results: Store snapshot visible to the task
        renderer: Report renderer for the run
        check_mode: Do not issue mutating commands
        become: Prefix privileged commands with sudo
        base_dir: Directory that relative controller paths (copy and
            template sources, download destinations) resolve against
    """

    host: HostConfig
    channel: Channel
    controller: Channel
    facts: FactSet
    variables: Mapping[str, Any] = field(default_factory=dict)
    results: Mapping[str, TaskResult] = field(default_factory=dict)
    renderer: ReportRenderer = field(default_factory=ReportRenderer)
    check_mode: bool = False
    become: bool = False
    base_dir: Path | None = None

    def source_path(self, src: str) -> str:
        if self.base_dir is None or Path(src).is_absolute():
            return src
        return str(self.base_dir / src)

    def render_context(self) -> dict[str, Any]:
        return build_context(
            self.host, self.facts, self.results, self.variables, self.renderer.run_timestamp
        )

    def privileged(self, command: str) -> str:
        return f"sudo -n {command}" if self.become else command


@dataclass
class ActionOutcome:
    """What a handler did.

    ``satisfied`` means the target was already in the desired state and
    nothing needed doing; the executor reports the task as skipped.
    """

    changed: bool = False
    rc: int | None = None
    stdout: str = ""
    stderr: str = ""
    output: dict[str, Any] = field(default_factory=dict)
    satisfied: bool = False


async def _checked(ctx: ActionContext, command: str, what: str) -> CommandResult:
    result = await ctx.channel.run(command)
    if not result.ok:
        raise ActionError(
            f"{what} failed with return code {result.rc}: {result.stderr.strip()}".rstrip(": "),
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


def _parse_mode(mode: str | None) -> int | None:
    if mode is None:
        return None
    try:
        return int(str(mode), 8)
    except ValueError:
        raise ActionError(f"Invalid file mode: {mode}") from None


def render_action(action: Action, context: Mapping[str, Any]) -> Action:
    """Render template markup in an action's string arguments."""
    changes: dict[str, Any] = {}
    for f in dataclasses.fields(action):
        value = getattr(action, f.name)
        if isinstance(value, tuple):
            rendered = tuple(render_value(item, context) for item in value)
        else:
            rendered = render_value(value, context)
        if rendered != value:
            changes[f.name] = rendered
    return dataclasses.replace(action, **changes) if changes else action


# shell


async def run_shell(action: ShellAction, ctx: ActionContext) -> ActionOutcome:
    if action.creates:
        if (await ctx.channel.stat(action.creates)).get("exists"):
            return ActionOutcome(satisfied=True, output={"creates": action.creates})

    if ctx.check_mode and action.is_mutating:
        return ActionOutcome(changed=True, output={"check_mode": True, "cmd": action.command})

    command = action.command
    if action.chdir:
        command = f"cd {shlex.quote(action.chdir)} && {command}"
    if ctx.become:
        command = f"sudo -n sh -c {shlex.quote(command)}"

    result = await ctx.channel.run(command)
    if not result.ok:
        raise ActionError(
            f"Command failed with return code {result.rc}",
            rc=result.rc,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return ActionOutcome(
        changed=action.is_mutating,
        rc=result.rc,
        stdout=result.stdout,
        stderr=result.stderr,
    )


# package

@dataclass(frozen=True)
class PackageManager:
    query: str
    install: str
    remove: str
    installed_marker: str | None = None

    def is_installed(self, result: CommandResult) -> bool:
        if not result.ok:
            return False
        return self.installed_marker is None or self.installed_marker in result.stdout


PACKAGE_MANAGERS = {
    "Debian": PackageManager(
        query="dpkg-query -W -f='${{Status}}' {name}",
        install="DEBIAN_FRONTEND=noninteractive apt-get install -y {names}",
        remove="DEBIAN_FRONTEND=noninteractive apt-get remove -y {names}",
        installed_marker="install ok installed",
    ),
    "RedHat": PackageManager(
        query="rpm -q {name}",
        install="dnf install -y {names}",
        remove="dnf remove -y {names}",
    ),
    "Suse": PackageManager(
        query="rpm -q {name}",
        install="zypper --non-interactive install {names}",
        remove="zypper --non-interactive remove {names}",
    ),
    "Alpine": PackageManager(
        query="apk info -e {name}",
        install="apk add {names}",
        remove="apk del {names}",
    ),
    "Archlinux": PackageManager(
        query="pacman -Q {name}",
        install="pacman -S --noconfirm {names}",
        remove="pacman -R --noconfirm {names}",
    ),
}


async def run_package(action: PackageAction, ctx: ActionContext) -> ActionOutcome:
    family = ctx.facts.os_family or ctx.host.os_family
    manager = PACKAGE_MANAGERS.get(family or "")
    if manager is None:
        raise ActionError(f"No package manager known for OS family {family!r}")

    installed: dict[str, bool] = {}
    for name in action.names:
        result = await ctx.channel.run(manager.query.format(name=shlex.quote(name)))
        installed[name] = manager.is_installed(result)

    if action.state == "present":
        pending = [name for name in action.names if not installed[name]]
        template = manager.install
    else:
        pending = [name for name in action.names if installed[name]]
        template = manager.remove

    output: dict[str, Any] = {"packages": list(action.names), "state": action.state, "pending": pending}
    if not pending:
        return ActionOutcome(satisfied=True, output=output)
    if ctx.check_mode:
        return ActionOutcome(changed=True, output={**output, "check_mode": True})

    command = ctx.privileged(template.format(names=" ".join(shlex.quote(n) for n in pending)))
    result = await _checked(ctx, command, f"Package {action.state} of {', '.join(pending)}")
    return ActionOutcome(changed=True, rc=result.rc, stdout=result.stdout, stderr=result.stderr, output=output)


# service


async def run_service(action: ServiceAction, ctx: ActionContext) -> ActionOutcome:
    name = shlex.quote(action.name)
    active = (await ctx.channel.run(f"systemctl is-active --quiet {name}")).ok
    commands: list[str] = []

    if action.state == "started" and not active:
        commands.append(f"systemctl start {name}")
    elif action.state == "stopped" and active:
        commands.append(f"systemctl stop {name}")
    elif action.state == "restarted":
        commands.append(f"systemctl restart {name}")

    enabled = None
    if action.enabled is not None:
        enabled = (await ctx.channel.run(f"systemctl is-enabled --quiet {name}")).ok
        if action.enabled and not enabled:
            commands.append(f"systemctl enable {name}")
        elif not action.enabled and enabled:
            commands.append(f"systemctl disable {name}")

    output: dict[str, Any] = {"name": action.name, "state": action.state, "was_active": active}
    if enabled is not None:
        output["was_enabled"] = enabled

    if not commands:
        return ActionOutcome(output=output)
    if ctx.check_mode:
        return ActionOutcome(changed=True, output={**output, "check_mode": True, "commands": commands})

    last = CommandResult(rc=0)
    for command in commands:
        last = await _checked(ctx, ctx.privileged(command), f"'{command}'")
    return ActionOutcome(changed=True, rc=last.rc, stdout=last.stdout, stderr=last.stderr, output=output)


# stat


async def run_stat(action: StatAction, ctx: ActionContext) -> ActionOutcome:
    info = await ctx.channel.stat(action.path)
    return ActionOutcome(output={"path": action.path, **info})


# copy


async def run_copy(action: CopyAction, ctx: ActionContext) -> ActionOutcome:
    try:
        content = await ctx.controller.read_file(ctx.source_path(action.src))
    except FileNotFoundError:
        if ctx.check_mode:
            # an earlier task may create it; check mode only reported that task
            return ActionOutcome(
                changed=True,
                output={"src": action.src, "dest": action.dest, "check_mode": True, "source_missing": True},
            )
        raise ActionError(f"Source file not found: {action.src}", src=action.src) from None

    checksum = hashlib.sha256(content).hexdigest()
    dest = action.dest
    info = await ctx.channel.stat(dest)
    if info.get("isdir"):
        dest = str(Path(dest) / Path(action.src).name)
        info = await ctx.channel.stat(dest)

    mode = _parse_mode(action.mode)
    output: dict[str, Any] = {"src": action.src, "dest": dest, "checksum": checksum, "size": len(content)}

    same_content = info.get("exists") and info.get("checksum") == checksum
    same_mode = mode is None or info.get("mode") == oct(mode)
    if same_content and same_mode:
        return ActionOutcome(output=output)
    if ctx.check_mode:
        return ActionOutcome(changed=True, output={**output, "check_mode": True})

    if ctx.become and not ctx.channel.is_local:
        staging = (await _checked(ctx, "mktemp /tmp/.hostplay-XXXXXXXX", "Staging file creation")).stdout.strip()
        # mktemp creates the file 0600
        await ctx.channel.write_file(staging, content, 0o644 if mode is None else mode)
        await _checked(ctx, ctx.privileged(f"mv {shlex.quote(staging)} {shlex.quote(dest)}"), "Install of copied file")
        if mode is not None:
            await _checked(ctx, ctx.privileged(f"chmod {action.mode} {shlex.quote(dest)}"), "chmod")
    else:
        await ctx.channel.write_file(dest, content, mode)

    return ActionOutcome(changed=True, output=output)


# directory


async def run_directory(action: DirectoryAction, ctx: ActionContext) -> ActionOutcome:
    info = await ctx.channel.stat(action.path)
    mode = _parse_mode(action.mode)
    output: dict[str, Any] = {"path": action.path}

    if info.get("exists") and not info.get("isdir"):
        raise ActionError(f"Path exists but is not a directory: {action.path}", path=action.path)

    commands: list[str] = []
    if not info.get("exists"):
        commands.append(f"mkdir -p {shlex.quote(action.path)}")
    if mode is not None and info.get("mode") != oct(mode):
        commands.append(f"chmod {action.mode} {shlex.quote(action.path)}")

    if not commands:
        return ActionOutcome(output=output)
    if ctx.check_mode:
        return ActionOutcome(changed=True, output={**output, "check_mode": True})

    for command in commands:
        await _checked(ctx, ctx.privileged(command), f"'{command}'")
    return ActionOutcome(changed=True, output=output)


# download


def _normalize_checksum(checksum: str) -> str:
    return checksum[len("sha256:"):] if checksum.startswith("sha256:") else checksum


async def fetch_url(url: str, dest: Path, timeout: float) -> tuple[str, int]:
    """Stream a URL into a file on the controller.

    Returns:
        (sha256 hex digest, size in bytes)

    Raises:
        ActionError: On any transport or HTTP status failure
    """
    hasher = hashlib.sha256()
    size = 0
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=65536):
                        f.write(chunk)
                        hasher.update(chunk)
                        size += len(chunk)
    except httpx.TimeoutException:
        raise ActionError(f"Download timed out after {timeout}s", url=url) from None
    except httpx.HTTPStatusError as e:
        raise ActionError(
            f"Download failed with status {e.response.status_code}",
            url=url,
            status=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        raise ActionError(f"Download failed: {e}", url=url) from e
    return hasher.hexdigest(), size


async def run_download(action: DownloadAction, ctx: ActionContext) -> ActionOutcome:
    dest = Path(ctx.source_path(action.dest))
    expected = _normalize_checksum(action.checksum) if action.checksum else None
    output: dict[str, Any] = {"url": action.url, "dest": str(dest)}

    if dest.exists() and not action.force:
        actual = hashlib.sha256(dest.read_bytes()).hexdigest()
        if expected is None or actual == expected:
            return ActionOutcome(output={**output, "checksum": actual})

    if ctx.check_mode:
        return ActionOutcome(changed=True, output={**output, "check_mode": True})

    dest.parent.mkdir(parents=True, exist_ok=True)
    actual, size = await fetch_url(action.url, dest, action.timeout)
    if expected and actual != expected:
        dest.unlink(missing_ok=True)
        raise ActionError(
            f"Checksum mismatch: expected {expected}, got {actual}",
            url=action.url,
            expected_checksum=expected,
            actual_checksum=actual,
        )
    return ActionOutcome(changed=True, output={**output, "checksum": actual, "size": size})


# template


async def run_template(action: TemplateAction, ctx: ActionContext) -> ActionOutcome:
    path, text = ctx.renderer.render_report(
        ctx.source_path(action.src),
        action.report,
        ctx.host.name,
        ctx.render_context(),
        ext=action.ext,
        write=False,
    )
    output: dict[str, Any] = {"path": str(path), "size": len(text)}

    if path.exists() and path.read_text() == text:
        return ActionOutcome(output=output)
    if ctx.check_mode:
        return ActionOutcome(changed=True, output={**output, "check_mode": True})

    ctx.renderer.write(path, text)
    return ActionOutcome(changed=True, output=output)


Handler = Callable[[Any, ActionContext], Awaitable[ActionOutcome]]

HANDLERS: dict[type, Handler] = {
    ShellAction: run_shell,
    PackageAction: run_package,
    ServiceAction: run_service,
    StatAction: run_stat,
    CopyAction: run_copy,
    DirectoryAction: run_directory,
    DownloadAction: run_download,
    TemplateAction: run_template,
}


async def run_action(action: Action, ctx: ActionContext) -> ActionOutcome:
    """Render an action's arguments and dispatch it to its handler.

    Raises:
        ActionError: The action failed
        TemplateError: An argument or report template did not render
        ConnectionError: The channel broke
    """
    action = render_action(action, ctx.render_context())
    handler = HANDLERS[type(action)]
    logger.debug(f"[{ctx.host.name}] {action.kind}: {action}")
    return await handler(action, ctx)
