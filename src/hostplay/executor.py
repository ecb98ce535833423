"""Playbook execution for hostplay.

One worker coroutine per host walks the playbook in order. At most
``forks`` hosts run at the same time; a failure on one host never affects
another. Run-once tasks execute on the first host that reaches them and
every other host reads the published result. Tasks delegated to the
controller run one at a time behind a single lock.
"""

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .actions import ActionContext, run_action
from .connection import Channel, ConnectionProvider
from .exceptions import ActionError, ConnectionError, HostplayError
from .facts import FactCollector, FactSet
from .logging import host_logger, log_performance
from .playbook import EvalContext, Playbook, Task, TemplateAction
from .progress import NullProgressReporter, ProgressReporter
from .report import ReportRenderer, format_run_timestamp
from .retry import RetryConfig, retry_with_backoff
from .store import ResultStore, RunOnceCell
from .types import HostConfig, HostStatus, TaskResult, TaskStatus, check_transition

logger = logging.getLogger(__name__)

CONNECT_STEP = "connect"
FACTS_STEP = "gather facts"
CONDITION_FALSE = "condition false"
DEPENDENCY_FAILED = "dependency failed"
HOST_FAILED = "host failed"
HOST_UNREACHABLE = "host unreachable"
ALREADY_SATISFIED = "already satisfied"
RUN_TIMEOUT = "run timeout"


@dataclass
class TaskRecord:
    """Lifecycle of one task on one host."""

    name: str
    status: TaskStatus = TaskStatus.PENDING
    reason: str | None = None

    def advance(self, status: TaskStatus, reason: str | None = None) -> None:
        check_transition(self.status, status)
        self.status = status
        if reason:
            self.reason = reason


@dataclass
class HostOutcome:
    """Everything that happened on one host during a run.

    Attributes:
        host_name: Inventory name of the host
        status: Final HostStatus
        tasks: Task records in playbook order
        results: Results of the tasks this host executed
        failed_task: Task (or step) that failed the host
        failure_reason: Why it failed
        facts: Facts gathered for the host
        duration: Wall time of the host's worker in seconds
    """

    host_name: str
    status: HostStatus = HostStatus.PENDING
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    results: dict[str, TaskResult] = field(default_factory=dict)
    failed_task: str | None = None
    failure_reason: str | None = None
    facts: FactSet | None = None
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == HostStatus.FAILED

    @property
    def skipped_tasks(self) -> list[str]:
        return [name for name, record in self.tasks.items() if record.status == TaskStatus.SKIPPED]

    def fail(self, step: str, reason: str) -> None:
        self.status = HostStatus.FAILED
        self.failed_task = step
        self.failure_reason = reason

    def status_line(self) -> str:
        """Single line summary: Succeeded, Failed: <task>, <reason>, or Skipped tasks: [...]."""
        if self.failed:
            return f"Failed: {self.failed_task}, {self.failure_reason}"
        skipped = self.skipped_tasks
        if skipped:
            return f"Skipped tasks: [{', '.join(skipped)}]"
        return "Succeeded"

    def counts(self) -> dict[str, int]:
        statuses = [record.status for record in self.tasks.values()]
        return {
            "succeeded": statuses.count(TaskStatus.SUCCEEDED),
            "changed": sum(1 for result in self.results.values() if result.changed),
            "skipped": statuses.count(TaskStatus.SKIPPED),
            "failed": statuses.count(TaskStatus.FAILED),
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "status_line": self.status_line(),
            "duration": round(self.duration, 3),
            "tasks": {
                name: {"status": record.status.value, "reason": record.reason}
                for name, record in self.tasks.items()
            },
            "results": {name: result.to_dict() for name, result in self.results.items()},
        }
        if self.failed:
            data["failed_task"] = self.failed_task
            data["failure_reason"] = self.failure_reason
        if self.facts is not None:
            data["facts"] = self.facts.to_dict()
        return data


@dataclass
class RunResults:
    """Results of running a playbook across hosts.

    Example:
        >>> results = await executor.run(playbook, hosts)
        >>> for name, outcome in results.hosts.items():
        ...     print(f"{name}: {outcome.status_line()}")
    """

    playbook: str
    run_timestamp: str
    check_mode: bool = False
    hosts: dict[str, HostOutcome] = field(default_factory=dict)
    duration: float = 0.0
    store: ResultStore = field(default_factory=ResultStore)

    @property
    def successful(self) -> int:
        return sum(1 for outcome in self.hosts.values() if outcome.status == HostStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.hosts.values() if outcome.failed)

    def is_success(self) -> bool:
        return self.failed == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.is_success() else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "playbook": self.playbook,
            "run_timestamp": self.run_timestamp,
            "check_mode": self.check_mode,
            "duration": round(self.duration, 3),
            "total": len(self.hosts),
            "successful": self.successful,
            "failed": self.failed,
            "hosts": {name: outcome.to_dict() for name, outcome in self.hosts.items()},
        }


@dataclass
class _Run:
    """Shared state of one run."""

    playbook: Playbook
    outcomes: dict[str, HostOutcome]
    renderer: ReportRenderer
    semaphore: asyncio.Semaphore
    store: ResultStore = field(default_factory=ResultStore)
    collector: FactCollector = field(default_factory=FactCollector)
    controller_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    cells: dict[str, RunOnceCell] = field(default_factory=dict)


class PlaybookExecutor:
    """Runs a playbook against a set of hosts.

    Attributes:
        provider: Opens channels to hosts
        forks: Maximum number of hosts worked on at once
        check_mode: Report what would change without changing anything
        reports_dir: Where template tasks write reports
        run_timestamp: Timestamp used in report names (default: now)
        timeout: Overall run timeout in seconds; hosts not finished by then
            stop before their next task
        retry_config: Retry policy for transient connection failures
        progress: Receives host and task events
        extra_vars: Variables overriding playbook and inventory vars

    Example:
        >>> executor = PlaybookExecutor(ConnectionProvider(), forks=5)
        >>> results = await executor.run(load_playbook("site.yml"), hosts)
        >>> results.exit_code
        0
    """

    def __init__(
        self,
        provider: ConnectionProvider | None = None,
        forks: int = 10,
        check_mode: bool = False,
        reports_dir: str | Path = "reports",
        run_timestamp: str | None = None,
        timeout: float | None = None,
        retry_config: RetryConfig | None = None,
        progress: ProgressReporter | None = None,
        extra_vars: Mapping[str, Any] | None = None,
    ) -> None:
        if forks < 1:
            raise ValueError("forks must be at least 1")
        self.provider = provider or ConnectionProvider()
        self.forks = forks
        self.check_mode = check_mode
        self.reports_dir = Path(reports_dir)
        self.run_timestamp = run_timestamp
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.progress = progress or NullProgressReporter()
        self.extra_vars = dict(extra_vars or {})

    async def run(self, playbook: Playbook, hosts: Iterable[HostConfig]) -> RunResults:
        """Run the playbook on every host and wait for all of them.

        Args:
            playbook: Loaded playbook
            hosts: Hosts to run on, in report order

        Returns:
            RunResults with one HostOutcome per host
        """
        hosts = list(hosts)
        names = [host.name for host in hosts]
        if len(set(names)) != len(names):
            raise HostplayError("Duplicate host names in run")

        run_timestamp = self.run_timestamp or format_run_timestamp()
        run = _Run(
            playbook=playbook,
            outcomes={
                host.name: HostOutcome(
                    host_name=host.name,
                    tasks={task.name: TaskRecord(task.name) for task in playbook.tasks},
                )
                for host in hosts
            },
            renderer=ReportRenderer(self.reports_dir, run_timestamp),
            semaphore=asyncio.Semaphore(self.forks),
            cells={task.name: RunOnceCell() for task in playbook.tasks if task.run_once},
        )
        results = RunResults(
            playbook=playbook.name,
            run_timestamp=run_timestamp,
            check_mode=self.check_mode,
            hosts=run.outcomes,
            store=run.store,
        )

        mode = " in check mode" if self.check_mode else ""
        logger.info(f"Running playbook '{playbook.name}' on {len(hosts)} host(s){mode}")
        self.progress.on_run_start(len(hosts), playbook.name)
        start = time.perf_counter()

        try:
            if hosts:
                workers = [asyncio.create_task(self._run_host(run, host)) for host in hosts]
                _, pending = await asyncio.wait(workers, timeout=self.timeout)
                if pending:
                    logger.warning(
                        f"Run timeout of {self.timeout}s reached, "
                        f"stopping {len(pending)} unfinished host(s)"
                    )
                    run.abort.set()
                    await asyncio.wait(pending)
        finally:
            await self.provider.close()

        run.store.freeze()
        results.duration = time.perf_counter() - start
        self.progress.on_run_complete(len(hosts), results.successful, results.failed, results.duration)
        logger.info(f"Run complete: {results.successful}/{len(hosts)} host(s) succeeded")
        return results

    async def _run_host(self, run: _Run, host: HostConfig) -> None:
        outcome = run.outcomes[host.name]
        log = host_logger(logger, host.name)

        async with run.semaphore:
            start = time.perf_counter()
            if run.abort.is_set():
                outcome.fail(CONNECT_STEP, RUN_TIMEOUT)
                self._skip_from(run, outcome, 0, RUN_TIMEOUT)
                self._finish_host(outcome, start)
                return

            outcome.status = HostStatus.RUNNING
            self.progress.on_host_start(host.name)
            log.debug("Worker started")

            step = CONNECT_STEP
            try:
                async with self.provider.session(host, opener=lambda: self._connect(host)) as channel:
                    step = FACTS_STEP
                    with log_performance(log, "Fact gathering", level=logging.DEBUG):
                        facts = await run.collector.gather(host.name, channel)
                    if facts.os_family:
                        host.os_family = facts.os_family
                    outcome.facts = facts
                    step = "tasks"
                    await self._run_tasks(run, host, channel, facts, outcome)
            except ConnectionError as e:
                log.error(f"Unreachable: {e}")
                self._interrupt(outcome, step, str(e))
                self._skip_from(run, outcome, 0, HOST_UNREACHABLE)
            except Exception as e:
                log.exception(f"Unexpected error: {e}")
                self._interrupt(outcome, step, f"unexpected error: {e}")
                self._skip_from(run, outcome, 0, HOST_FAILED)

            if not outcome.failed:
                outcome.status = HostStatus.SUCCEEDED
            self._finish_host(outcome, start)

    async def _connect(self, host: HostConfig) -> Channel:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self.progress.on_host_retry(host.name, attempt, self.retry_config.max_attempts, str(error), delay)

        return await retry_with_backoff(
            lambda: self.provider.open(host),
            self.retry_config,
            host_name=host.name,
            on_retry=on_retry,
        )

    def _finish_host(self, outcome: HostOutcome, start: float) -> None:
        outcome.duration = time.perf_counter() - start
        status_line = outcome.status_line()
        logger.info(f"{outcome.host_name}: {status_line}")
        self.progress.on_host_complete(outcome.host_name, not outcome.failed, status_line, outcome.duration)

    async def _run_tasks(
        self,
        run: _Run,
        host: HostConfig,
        channel: Channel,
        facts: FactSet,
        outcome: HostOutcome,
    ) -> None:
        variables = {**run.playbook.vars, **host.vars, **self.extra_vars}

        for index, task in enumerate(run.playbook.tasks):
            record = outcome.tasks[task.name]

            if run.abort.is_set():
                outcome.fail(task.name, RUN_TIMEOUT)
                self._skip_from(run, outcome, index, RUN_TIMEOUT)
                return

            record.advance(TaskStatus.EVALUATING)
            snapshot = run.store.snapshot(host.name, run.playbook.names_before(index))
            ctx = EvalContext(results=snapshot, facts=facts.to_dict(), vars=variables)

            if not task.when.evaluate(ctx):
                self._settle(host, record, TaskStatus.SKIPPED, CONDITION_FALSE)
                continue
            if self._dependency_failed(task, snapshot, outcome):
                self._settle(host, record, TaskStatus.SKIPPED, DEPENDENCY_FAILED)
                continue

            if task.run_once:
                result = await self._run_once(run, host, channel, facts, variables, task, record, snapshot)
            else:
                result = await self._execute(run, host, channel, facts, variables, task, record, snapshot)
                run.store.put(host.name, task.name, result)
                outcome.results[task.name] = result

            if result.failed and not task.ignore_errors:
                if result.host_name == host.name:
                    reason = result.error or "task failed"
                else:
                    reason = f"run-once task failed on {result.host_name}: {result.error}"
                if isinstance(task.action, TemplateAction):
                    # a broken report fails the host but not the tasks after it
                    if not outcome.failed:
                        outcome.fail(task.name, reason)
                    continue
                outcome.fail(task.name, reason)
                self._skip_from(run, outcome, index + 1)
                return

    async def _run_once(
        self,
        run: _Run,
        host: HostConfig,
        channel: Channel,
        facts: FactSet,
        variables: Mapping[str, Any],
        task: Task,
        record: TaskRecord,
        snapshot: Mapping[str, TaskResult],
    ) -> TaskResult:
        outcome = run.outcomes[host.name]

        async def execute_and_publish() -> TaskResult:
            result = await self._execute(run, host, channel, facts, variables, task, record, snapshot)
            result.executed_by = host.name
            run.store.publish(task.name, result)
            outcome.results[task.name] = result
            return result

        result, executed = await run.cells[task.name].get_or_run(execute_and_publish, owner=host.name)
        if executed:
            return result

        if result.failed:
            self._settle(host, record, TaskStatus.FAILED, f"run-once task failed on {result.executed_by}")
        else:
            self._settle(host, record, TaskStatus.SKIPPED, f"run once: executed by {result.executed_by}")
        return result

    async def _execute(
        self,
        run: _Run,
        host: HostConfig,
        channel: Channel,
        facts: FactSet,
        variables: Mapping[str, Any],
        task: Task,
        record: TaskRecord,
        snapshot: Mapping[str, TaskResult],
    ) -> TaskResult:
        """Run a task's action and turn its outcome into a TaskResult."""
        log = host_logger(logger, host.name)
        record.advance(TaskStatus.RUNNING)
        log.info(f"Running task '{task.name}'")

        actx = ActionContext(
            host=host,
            channel=self.provider.controller() if task.on_controller else channel,
            controller=self.provider.controller(),
            facts=facts,
            variables=variables,
            results=snapshot,
            renderer=run.renderer,
            check_mode=self.check_mode,
            become=task.become,
            base_dir=run.playbook.source.parent if run.playbook.source else None,
        )

        try:
            if task.on_controller:
                async with run.controller_lock:
                    action_outcome = await run_action(task.action, actx)
            else:
                action_outcome = await run_action(task.action, actx)
        except ActionError as e:
            log.warning(f"Task '{task.name}' failed: {e}")
            result = TaskResult(
                task_name=task.name,
                host_name=host.name,
                status=TaskStatus.FAILED,
                rc=e.rc,
                stdout=e.stdout,
                stderr=e.stderr,
                output=dict(e.output),
                error=str(e),
            )
        except ConnectionError:
            raise
        except (HostplayError, OSError) as e:
            log.warning(f"Task '{task.name}' failed: {e}")
            result = TaskResult(
                task_name=task.name,
                host_name=host.name,
                status=TaskStatus.FAILED,
                error=str(e),
            )
        else:
            status = TaskStatus.SKIPPED if action_outcome.satisfied else TaskStatus.SUCCEEDED
            result = TaskResult(
                task_name=task.name,
                host_name=host.name,
                status=status,
                changed=action_outcome.changed,
                rc=action_outcome.rc,
                stdout=action_outcome.stdout,
                stderr=action_outcome.stderr,
                output=action_outcome.output,
                reason=ALREADY_SATISFIED if action_outcome.satisfied else None,
            )

        reason = result.reason
        if result.failed:
            reason = f"ignored: {result.error}" if task.ignore_errors else result.error
        self._settle(host, record, result.status, reason, changed=result.changed)
        return result

    def _interrupt(self, outcome: HostOutcome, step: str, reason: str) -> None:
        """Fail the host at the task in flight, or at ``step`` when none was."""
        for record in outcome.tasks.values():
            if record.status in (TaskStatus.EVALUATING, TaskStatus.RUNNING):
                record.advance(TaskStatus.FAILED, reason)
                step = record.name
                self.progress.on_task_complete(
                    outcome.host_name, record.name, TaskStatus.FAILED.value, False, reason
                )
        if not outcome.failed:
            outcome.fail(step, reason)

    def _settle(
        self,
        host: HostConfig,
        record: TaskRecord,
        status: TaskStatus,
        reason: str | None = None,
        changed: bool = False,
    ) -> None:
        record.advance(status, reason)
        self.progress.on_task_complete(host.name, record.name, status.value, changed, reason)

    def _dependency_failed(
        self,
        task: Task,
        snapshot: Mapping[str, TaskResult],
        outcome: HostOutcome,
    ) -> bool:
        for name in task.requires:
            result = snapshot.get(name)
            if result is not None and result.failed:
                return True
            if result is None and outcome.tasks[name].reason == DEPENDENCY_FAILED:
                return True
        return False

    def _skip_from(
        self,
        run: _Run,
        outcome: HostOutcome,
        start: int,
        reason: str = HOST_FAILED,
    ) -> None:
        """Skip every task from ``start`` on that has not started.

        Tasks that require the failed task (directly or through another
        skipped task) get "dependency failed"; the rest get ``reason``.
        """
        blocked = {outcome.failed_task} if outcome.failed_task else set()
        for task in run.playbook.tasks[start:]:
            record = outcome.tasks[task.name]
            if record.status != TaskStatus.PENDING:
                continue
            if blocked.intersection(task.requires):
                record.advance(TaskStatus.SKIPPED, DEPENDENCY_FAILED)
                blocked.add(task.name)
            else:
                record.advance(TaskStatus.SKIPPED, reason)
            self.progress.on_task_complete(outcome.host_name, task.name, TaskStatus.SKIPPED.value, False, record.reason)
