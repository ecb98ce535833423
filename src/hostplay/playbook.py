"""Playbook model and loader for hostplay.

A playbook is an ordered, immutable list of tasks targeting a host
pattern. Each task carries one action (a tagged variant), a predicate over
earlier task results, a scope and an execution site.

Example playbook:

    name: Provision web servers
    hosts: webservers
    vars:
      app_dir: /opt/app
    tasks:
      - name: install nginx
        package: nginx
        become: true
        when:
          fact: os_family
          in: [Debian, RedHat]

      - name: fetch release
        download:
          url: https://example.com/app.tar.gz
          dest: build/app.tar.gz
        run_once: true

      - name: ship release
        copy:
          src: build/app.tar.gz
          dest: "{{ app_dir }}/app.tar.gz"
        requires: [fetch release]
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

import yaml

from .exceptions import PlaybookError
from .types import TaskResult


class Scope(str, Enum):
    PER_HOST = "per-host"
    RUN_ONCE = "run-once"


class Site(str, Enum):
    REMOTE = "remote"
    CONTROLLER = "controller"


# Predicates


@dataclass(frozen=True)
class EvalContext:
    """What a predicate may look at: an immutable store snapshot, facts and vars."""

    results: Mapping[str, TaskResult]
    facts: Mapping[str, Any] = field(default_factory=dict)
    vars: Mapping[str, Any] = field(default_factory=dict)


class Predicate:
    """Base class for task conditions."""

    def evaluate(self, ctx: EvalContext) -> bool:
        raise NotImplementedError

    def references(self) -> set[str]:
        """Result keys this predicate reads."""
        return set()


@dataclass(frozen=True)
class Always(Predicate):
    def evaluate(self, ctx: EvalContext) -> bool:
        return True


@dataclass(frozen=True)
class FactIs(Predicate):
    """A fact equals one of the given values."""

    name: str
    values: tuple[Any, ...]

    def evaluate(self, ctx: EvalContext) -> bool:
        return ctx.facts.get(self.name) in self.values


@dataclass(frozen=True)
class VarTrue(Predicate):
    """A variable is set and truthy."""

    name: str

    def evaluate(self, ctx: EvalContext) -> bool:
        return bool(ctx.vars.get(self.name))


@dataclass(frozen=True)
class ResultDefined(Predicate):
    key: str

    def evaluate(self, ctx: EvalContext) -> bool:
        return self.key in ctx.results

    def references(self) -> set[str]:
        return {self.key}


@dataclass(frozen=True)
class ResultSucceeded(Predicate):
    """The referenced task has a result and did not fail."""

    key: str

    def evaluate(self, ctx: EvalContext) -> bool:
        result = ctx.results.get(self.key)
        return result is not None and result.ok

    def references(self) -> set[str]:
        return {self.key}


@dataclass(frozen=True)
class ResultFailed(Predicate):
    key: str

    def evaluate(self, ctx: EvalContext) -> bool:
        result = ctx.results.get(self.key)
        return result is not None and result.failed

    def references(self) -> set[str]:
        return {self.key}


@dataclass(frozen=True)
class ResultField(Predicate):
    """A field of a result equals a value.

    ``field`` names a TaskResult field (rc, changed, stdout, ...) or a key of
    its structured output (exists, checksum, ...).
    """

    key: str
    field: str
    value: Any

    def evaluate(self, ctx: EvalContext) -> bool:
        result = ctx.results.get(self.key)
        if result is None:
            return False
        if self.field in result.output:
            return result.output[self.field] == self.value
        return result.to_dict().get(self.field) == self.value

    def references(self) -> set[str]:
        return {self.key}


@dataclass(frozen=True)
class Not(Predicate):
    inner: Predicate

    def evaluate(self, ctx: EvalContext) -> bool:
        return not self.inner.evaluate(ctx)

    def references(self) -> set[str]:
        return self.inner.references()


@dataclass(frozen=True)
class AllOf(Predicate):
    items: tuple[Predicate, ...]

    def evaluate(self, ctx: EvalContext) -> bool:
        return all(p.evaluate(ctx) for p in self.items)

    def references(self) -> set[str]:
        return set().union(*(p.references() for p in self.items))


@dataclass(frozen=True)
class AnyOf(Predicate):
    items: tuple[Predicate, ...]

    def evaluate(self, ctx: EvalContext) -> bool:
        return any(p.evaluate(ctx) for p in self.items)

    def references(self) -> set[str]:
        return set().union(*(p.references() for p in self.items))


def parse_predicate(data: Any) -> Predicate:
    """Build a predicate from its YAML form.

    Forms:
        fact: os_family, equals: Debian       (or in: [Debian, RedHat])
        var: enable_tls
        defined: <task>
        succeeded: <task>
        failed: <task>
        result: <task>, field: exists, equals: true
        not: {...}
        all: [{...}, ...]
        any: [{...}, ...]
    """
    if data is None or data is True:
        return Always()
    if not isinstance(data, dict):
        raise PlaybookError(f"Invalid condition: {data!r}")

    if "fact" in data:
        if "in" in data:
            return FactIs(str(data["fact"]), tuple(data["in"]))
        if "equals" not in data:
            raise PlaybookError(f"Fact condition needs 'equals' or 'in': {data!r}")
        return FactIs(str(data["fact"]), (data["equals"],))
    if "var" in data:
        return VarTrue(str(data["var"]))
    if "defined" in data:
        return ResultDefined(str(data["defined"]))
    if "succeeded" in data:
        return ResultSucceeded(str(data["succeeded"]))
    if "failed" in data:
        return ResultFailed(str(data["failed"]))
    if "result" in data:
        if "field" not in data or "equals" not in data:
            raise PlaybookError(f"Result condition needs 'field' and 'equals': {data!r}")
        return ResultField(str(data["result"]), str(data["field"]), data["equals"])
    if "not" in data:
        return Not(parse_predicate(data["not"]))
    if "all" in data:
        return AllOf(tuple(parse_predicate(item) for item in data["all"]))
    if "any" in data:
        return AnyOf(tuple(parse_predicate(item) for item in data["any"]))

    raise PlaybookError(f"Unknown condition: {data!r}")


# Actions


@dataclass(frozen=True)
class Action:
    """Base class for task actions.

    ``mutating`` actions change target state and are not executed in check
    mode. ``controller_only`` actions always run on the controller.
    """

    kind: ClassVar[str] = ""
    mutating: ClassVar[bool] = True
    controller_only: ClassVar[bool] = False

    @property
    def is_mutating(self) -> bool:
        return self.mutating


@dataclass(frozen=True)
class ShellAction(Action):
    kind: ClassVar[str] = "shell"

    command: str
    chdir: str | None = None
    creates: str | None = None
    readonly: bool = False

    @property
    def is_mutating(self) -> bool:
        return not self.readonly


@dataclass(frozen=True)
class PackageAction(Action):
    kind: ClassVar[str] = "package"

    names: tuple[str, ...]
    state: str = "present"


@dataclass(frozen=True)
class ServiceAction(Action):
    kind: ClassVar[str] = "service"

    name: str
    state: str | None = "started"
    enabled: bool | None = None


@dataclass(frozen=True)
class StatAction(Action):
    kind: ClassVar[str] = "stat"
    mutating: ClassVar[bool] = False

    path: str


@dataclass(frozen=True)
class CopyAction(Action):
    """Copy a controller file to the task's site."""

    kind: ClassVar[str] = "copy"

    src: str
    dest: str
    mode: str | None = None


@dataclass(frozen=True)
class DirectoryAction(Action):
    kind: ClassVar[str] = "directory"

    path: str
    mode: str | None = None


@dataclass(frozen=True)
class DownloadAction(Action):
    kind: ClassVar[str] = "download"
    controller_only: ClassVar[bool] = True

    url: str
    dest: str
    checksum: str | None = None
    force: bool = False
    timeout: float = 300.0


@dataclass(frozen=True)
class TemplateAction(Action):
    """Render a report template for the host into the reports directory."""

    kind: ClassVar[str] = "template"
    controller_only: ClassVar[bool] = True

    src: str
    report: str = "report"
    ext: str | None = None


PACKAGE_STATES = {"present", "absent"}
SERVICE_STATES = {"started", "stopped", "restarted", None}


def _require(args: dict[str, Any], key: str, kind: str) -> Any:
    if key not in args or args[key] in (None, ""):
        raise PlaybookError(f"{kind} action requires '{key}'")
    return args[key]


def _args(value: Any, kind: str, short_key: str) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, list)):
        return {short_key: value}
    raise PlaybookError(f"Invalid arguments for {kind}: {value!r}")


def _parse_shell(value: Any) -> Action:
    args = _args(value, "shell", "cmd")
    return ShellAction(
        command=str(_require(args, "cmd", "shell")),
        chdir=args.get("chdir"),
        creates=args.get("creates"),
        readonly=bool(args.get("readonly", False)),
    )


def _parse_package(value: Any) -> Action:
    args = _args(value, "package", "name")
    names = _require(args, "name", "package")
    names = tuple(names) if isinstance(names, list) else (str(names),)
    state = args.get("state", "present")
    if state not in PACKAGE_STATES:
        raise PlaybookError(f"Invalid package state: {state}")
    return PackageAction(names=names, state=state)


def _parse_service(value: Any) -> Action:
    args = _args(value, "service", "name")
    state = args.get("state", "started" if "enabled" not in args else None)
    if state not in SERVICE_STATES:
        raise PlaybookError(f"Invalid service state: {state}")
    enabled = args.get("enabled")
    return ServiceAction(
        name=str(_require(args, "name", "service")),
        state=state,
        enabled=None if enabled is None else bool(enabled),
    )


def _parse_stat(value: Any) -> Action:
    args = _args(value, "stat", "path")
    return StatAction(path=str(_require(args, "path", "stat")))


def _mode(value: Any) -> str | None:
    if value is None:
        return None
    # YAML reads an unquoted 0644 as the integer 420
    if isinstance(value, int) and not isinstance(value, bool):
        return format(value, "o")
    return str(value)


def _parse_copy(value: Any) -> Action:
    args = _args(value, "copy", "src")
    return CopyAction(
        src=str(_require(args, "src", "copy")),
        dest=str(_require(args, "dest", "copy")),
        mode=_mode(args.get("mode")),
    )


def _parse_directory(value: Any) -> Action:
    args = _args(value, "directory", "path")
    return DirectoryAction(path=str(_require(args, "path", "directory")), mode=_mode(args.get("mode")))


def _parse_download(value: Any) -> Action:
    args = _args(value, "download", "url")
    return DownloadAction(
        url=str(_require(args, "url", "download")),
        dest=str(_require(args, "dest", "download")),
        checksum=args.get("checksum"),
        force=bool(args.get("force", False)),
        timeout=float(args.get("timeout", 300.0)),
    )


def _parse_template(value: Any) -> Action:
    args = _args(value, "template", "src")
    return TemplateAction(
        src=str(_require(args, "src", "template")),
        report=str(args.get("report", "report")),
        ext=args.get("ext"),
    )


ACTION_PARSERS = {
    "shell": _parse_shell,
    "package": _parse_package,
    "service": _parse_service,
    "stat": _parse_stat,
    "copy": _parse_copy,
    "directory": _parse_directory,
    "download": _parse_download,
    "template": _parse_template,
}

TASK_KEYS = {"name", "when", "run_once", "delegate_to", "ignore_errors", "become", "requires"}


@dataclass(frozen=True)
class Task:
    """One step of a playbook. Immutable once loaded."""

    name: str
    action: Action
    when: Predicate = field(default_factory=Always)
    scope: Scope = Scope.PER_HOST
    site: Site = Site.REMOTE
    ignore_errors: bool = False
    become: bool = False
    requires: tuple[str, ...] = ()

    @property
    def run_once(self) -> bool:
        return self.scope == Scope.RUN_ONCE

    @property
    def on_controller(self) -> bool:
        return self.site == Site.CONTROLLER

    def references(self) -> set[str]:
        """Result keys this task needs from earlier tasks."""
        return self.when.references() | set(self.requires)


@dataclass(frozen=True)
class Playbook:
    """An ordered task sequence targeting a host pattern."""

    name: str
    tasks: tuple[Task, ...]
    hosts: str = "all"
    vars: Mapping[str, Any] = field(default_factory=dict)
    source: Path | None = None

    def task_names(self) -> list[str]:
        return [task.name for task in self.tasks]

    def names_before(self, index: int) -> tuple[str, ...]:
        """Names of the tasks declared strictly before position ``index``."""
        return tuple(task.name for task in self.tasks[:index])

    def get_task(self, name: str) -> Task | None:
        for task in self.tasks:
            if task.name == name:
                return task
        return None


def parse_task(data: Any, position: int) -> Task:
    """Build a Task from one YAML task entry."""
    if not isinstance(data, dict):
        raise PlaybookError(f"Task #{position} is not a mapping")

    name = data.get("name")
    if not name:
        raise PlaybookError(f"Task #{position} has no name")
    name = str(name)

    action_keys = [key for key in data if key in ACTION_PARSERS]
    unknown = [key for key in data if key not in ACTION_PARSERS and key not in TASK_KEYS]
    if unknown:
        raise PlaybookError(f"Task '{name}': unknown keys {sorted(unknown)}")
    if len(action_keys) != 1:
        raise PlaybookError(
            f"Task '{name}' must have exactly one action "
            f"({', '.join(ACTION_PARSERS)}), found {action_keys or 'none'}"
        )
    kind = action_keys[0]
    try:
        action = ACTION_PARSERS[kind](data[kind])
    except PlaybookError as e:
        raise PlaybookError(f"Task '{name}': {e}") from e

    delegate = data.get("delegate_to")
    if delegate in (None, "remote"):
        site = Site.CONTROLLER if action.controller_only else Site.REMOTE
        if delegate == "remote" and action.controller_only:
            raise PlaybookError(f"Task '{name}': {kind} runs on the controller only")
    elif delegate in ("controller", "localhost"):
        site = Site.CONTROLLER
    else:
        raise PlaybookError(f"Task '{name}': invalid delegate_to {delegate!r}")

    requires = data.get("requires", [])
    if isinstance(requires, str):
        requires = [requires]

    return Task(
        name=name,
        action=action,
        when=parse_predicate(data.get("when")),
        scope=Scope.RUN_ONCE if data.get("run_once") else Scope.PER_HOST,
        site=site,
        ignore_errors=bool(data.get("ignore_errors", False)),
        become=bool(data.get("become", False)),
        requires=tuple(str(r) for r in requires),
    )


def validate_order(tasks: tuple[Task, ...]) -> None:
    """Check that names are unique and every reference points backwards.

    Raises:
        PlaybookError: On a duplicate name or a reference to a task that is
            not declared strictly before the referencing task
    """
    seen: set[str] = set()
    all_names = {task.name for task in tasks}
    for task in tasks:
        if task.name in seen:
            raise PlaybookError(f"Duplicate task name: '{task.name}'")
        for ref in sorted(task.references()):
            if ref in seen:
                continue
            if ref == task.name or ref in all_names:
                raise PlaybookError(
                    f"Task '{task.name}' references '{ref}' which is not declared before it"
                )
            raise PlaybookError(f"Task '{task.name}' references unknown task '{ref}'")
        seen.add(task.name)


def parse_playbook(data: Any, source: Path | None = None) -> Playbook:
    """Build a Playbook from parsed YAML.

    Accepts a play mapping or a list holding exactly one play.
    """
    if isinstance(data, list):
        if len(data) != 1:
            raise PlaybookError(f"Expected exactly one play, found {len(data)}")
        data = data[0]
    if not isinstance(data, dict):
        raise PlaybookError("Playbook must be a mapping")

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise PlaybookError("Playbook has no tasks")

    play_vars = data.get("vars") or {}
    if not isinstance(play_vars, dict):
        raise PlaybookError("Playbook vars must be a mapping")

    tasks = tuple(parse_task(item, i + 1) for i, item in enumerate(raw_tasks))
    validate_order(tasks)

    return Playbook(
        name=str(data.get("name") or (source.stem if source else "playbook")),
        tasks=tasks,
        hosts=str(data.get("hosts", "all")),
        vars=dict(play_vars),
        source=source,
    )


def load_playbook(path: str | Path) -> Playbook:
    """Load and validate a playbook file.

    Raises:
        PlaybookError: If the file is missing, not YAML, or invalid
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text())
    except FileNotFoundError:
        raise PlaybookError(f"Playbook not found: {path}") from None
    except yaml.YAMLError as e:
        raise PlaybookError(f"Invalid YAML in {path}: {e}") from e
    return parse_playbook(data, source=path)
