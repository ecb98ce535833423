"""Command-line interface for hostplay."""

import asyncio
import json
import logging
import shlex
from pathlib import Path
from typing import Any, Optional

import click
import yaml
from rich.console import Console

from hostplay import __version__
from hostplay.config import ConfigError, load_config
from hostplay.connection import ConnectionProvider
from hostplay.exceptions import HostplayError, TemplateError
from hostplay.executor import PlaybookExecutor, RunResults
from hostplay.host_filter import format_filter_summary, select_hosts
from hostplay.inventory import load_inventory
from hostplay.logging import configure_logging, get_level_from_name, get_level_from_verbosity
from hostplay.playbook import load_playbook
from hostplay.progress import create_progress_reporter, render_recap
from hostplay.report import check_name_part
from hostplay.retry import RetryConfig

logger = logging.getLogger(__name__)


def parse_extra_vars(values: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``-e`` values into a dictionary.

    Each value holds one or more space-separated key=value pairs; quoted
    values are supported. A value that parses as YAML scalar (true, 3,
    1.5) keeps its type.

    Raises:
        ValueError: If a pair has no ``=``

    Example:
        >>> parse_extra_vars(("app_version=1.2 debug=true", "motd='hello world'"))
        {'app_version': 1.2, 'debug': True, 'motd': 'hello world'}
    """
    result: dict[str, Any] = {}
    for value in values:
        try:
            pairs = shlex.split(value)
        except ValueError as e:
            raise ValueError(f"Failed to parse extra vars: {e}") from e
        for pair in pairs:
            if "=" not in pair:
                raise ValueError(f"Invalid extra var '{pair}'. Expected key=value format.")
            key, raw = pair.split("=", 1)
            try:
                parsed = yaml.safe_load(raw) if raw else ""
            except yaml.YAMLError:
                parsed = raw
            result[key] = parsed if isinstance(parsed, (str, int, float, bool)) else raw
    return result


def format_results_json(results: RunResults) -> str:
    return json.dumps(results.to_dict(), indent=2, default=str)


def validate_run_id(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        return check_name_part(value, "run id")
    except TemplateError as e:
        raise click.BadParameter(str(e)) from e


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """hostplay - run an idempotent playbook against inventory hosts."""
    if version:
        click.echo(f"hostplay {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.group()
def inventory() -> None:
    """Inventory commands."""
    pass


@inventory.command("validate")
@click.option("--inventory", "-i", "inventory_file", required=True, help="Inventory file (YAML or JSON)")
@click.option("--check-keys", is_flag=True, help="Also check that SSH key files exist")
def inventory_validate(inventory_file: str, check_keys: bool) -> None:
    """Validate inventory structure and show summary."""
    try:
        inv = load_inventory(inventory_file)
    except HostplayError as e:
        raise click.ClickException(str(e))

    all_hosts = inv.get_all_hosts()
    groups = inv.list_groups()

    click.echo(f"\nInventory: {inventory_file}")
    click.echo(f"Loaded {len(all_hosts)} host(s) from {len(groups)} group(s)\n")

    for group in groups:
        count = len(group.hosts)
        children = f", children: {', '.join(group.children)}" if group.children else ""
        click.echo(f"  {group.name} ({count} host{'s' if count != 1 else ''}{children}):")
        for name, host in group.hosts.items():
            if host.is_local:
                click.echo(f"    - {name} (local)")
            else:
                click.echo(f"    - {name} ({host.user}@{host.address}:{host.port})")

    click.echo("\nValidation:")
    warnings = []
    errors = []
    for name, host in all_hosts.items():
        if host.is_local:
            continue
        if not host.key_file and not host.password:
            warnings.append(f"{name}: No key file or password, relying on SSH agent or default keys")
        elif host.key_file and check_keys:
            expanded = Path(host.key_file).expanduser()
            if not expanded.exists():
                errors.append(f"{name}: SSH key not found: {expanded}")

    if not errors and not warnings:
        click.echo("  All checks passed")
    for warning in warnings:
        click.echo(f"  Warning: {warning}")
    for error in errors:
        click.echo(f"  Error: {error}")

    if errors:
        raise click.ClickException(f"{len(errors)} validation error(s) found")
    click.echo()


@cli.group()
def playbook() -> None:
    """Playbook commands."""
    pass


@playbook.command("validate")
@click.argument("playbook_file", type=click.Path())
def playbook_validate(playbook_file: str) -> None:
    """Load a playbook, check task order and list its tasks."""
    try:
        play = load_playbook(playbook_file)
    except HostplayError as e:
        raise click.ClickException(str(e))

    click.echo(f"Playbook: {play.name} (hosts: {play.hosts})")
    click.echo(f"{len(play.tasks)} task(s):")
    for position, task in enumerate(play.tasks, 1):
        flags = [task.action.kind, task.scope.value, task.site.value]
        if task.become:
            flags.append("become")
        if task.ignore_errors:
            flags.append("ignore_errors")
        click.echo(f"  {position}. {task.name} [{', '.join(flags)}]")
        if task.requires:
            click.echo(f"       requires: {', '.join(task.requires)}")
    click.echo("Playbook is valid")


@cli.command("run")
@click.argument("playbook_file", type=click.Path())
@click.option("--inventory", "-i", "inventory_file", required=True, help="Inventory file (YAML or JSON)")
@click.option("--check", is_flag=True, help="Report what would change without changing anything")
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug, -vvv trace)")
@click.option("--limit", "-l", type=str, default=None, help="Limit hosts (web*,!db*,@webservers)")
@click.option("--forks", "-f", type=int, default=None, help="Hosts worked on at once (default: 10)")
@click.option("--timeout", "-t", type=float, default=None, help="Overall run timeout in seconds")
@click.option("--retry", type=int, default=None, help="Connection retries for transient failures")
@click.option("--retry-delay", type=float, default=None, help="Initial delay between retries in seconds")
@click.option("--reports-dir", type=click.Path(), default=None, help="Directory for rendered reports")
@click.option("--run-id", type=str, default=None, callback=validate_run_id,
              help="Run timestamp used in report names")
@click.option("--extra-vars", "-e", multiple=True, help="Extra variables as key=value (repeatable)")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default=None,
              help="Output format (default: text)")
@click.option("--progress", is_flag=True, help="Show per-task progress on stderr")
@click.option("--save-results", type=click.Path(), default=None, help="Write run results as JSON")
@click.option("--log-file", type=click.Path(), default=None, help="Also write logs to this file")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly")
@click.option("--config", "config_file", type=click.Path(), default=None,
              help="Run configuration file (YAML or JSON)")
def run(
    playbook_file: str,
    inventory_file: str,
    check: bool,
    verbose: int,
    limit: Optional[str],
    forks: Optional[int],
    timeout: Optional[float],
    retry: Optional[int],
    retry_delay: Optional[float],
    reports_dir: Optional[str],
    run_id: Optional[str],
    extra_vars: tuple[str, ...],
    output_format: Optional[str],
    progress: bool,
    save_results: Optional[str],
    log_file: Optional[str],
    log_level: Optional[str],
    config_file: Optional[str],
) -> None:
    """Run PLAYBOOK against the hosts of an inventory.

    Every host gathers facts, then runs the playbook's tasks in order.
    Hosts run concurrently and independently: a failure on one host never
    stops another. The exit code is non-zero if any host failed.

    Logging options:
    - -v: Info level
    - -vv: Debug level
    - -vvv: Trace level (every remote command)
    - --log-file FILE: Also write logs to file

    Examples:
        hostplay run site.yml -i inventory.yml
        hostplay run site.yml -i inventory.yml --check
        hostplay run site.yml -i inventory.yml --limit @webservers -vv
        hostplay run site.yml -i inventory.yml -e app_version=1.2 --format json
        hostplay run site.yml -i inventory.yml --retry 3 --timeout 600
    """
    try:
        config = load_config(config_file).merge(
            forks=forks,
            timeout=timeout,
            retry=retry,
            retry_delay=retry_delay,
            reports_dir=reports_dir,
            output_format=output_format,
        )
    except ConfigError as e:
        raise click.ClickException(str(e))
    json_output = config.output_format == "json"

    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    configure_logging(
        level=logging.CRITICAL if json_output else level,
        log_file=log_file,
        file_level=level if log_file else None,
    )

    try:
        variables = parse_extra_vars(extra_vars)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--extra-vars")

    try:
        play = load_playbook(playbook_file)
        inv = load_inventory(inventory_file)
        hosts = select_hosts(inv, play.hosts)
        if limit:
            limited = select_hosts(inv, play.hosts, limit)
            logger.info(format_filter_summary(len(hosts), len(limited), limit))
            hosts = limited
    except HostplayError as e:
        raise click.ClickException(str(e))

    if not hosts:
        raise click.ClickException("No hosts matched")

    provider = ConnectionProvider(
        connect_timeout=config.connect_timeout,
        command_timeout=config.command_timeout,
        known_hosts=config.known_hosts,
        host_key_checking=config.host_key_checking,
    )
    executor = PlaybookExecutor(
        provider=provider,
        forks=config.forks,
        check_mode=check,
        reports_dir=config.reports_dir,
        run_timestamp=run_id,
        timeout=config.timeout,
        retry_config=RetryConfig(max_attempts=config.retry, initial_delay=config.retry_delay),
        progress=create_progress_reporter(progress, json_format=json_output),
        extra_vars=variables,
    )

    results = asyncio.run(executor.run(play, hosts))

    if json_output:
        click.echo(format_results_json(results))
    else:
        render_recap(results, Console(highlight=False, markup=False))

    if save_results:
        path = Path(save_results)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(format_results_json(results) + "\n")
        logger.info(f"Saved results to {path}")

    if not results.is_success():
        if json_output:
            raise SystemExit(results.exit_code)
        raise click.ClickException(f"{results.failed} host(s) failed")


def main() -> None:
    """Package entry point for the hostplay command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
