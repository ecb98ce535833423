#!/usr/bin/env python3
"""Run the provisioning playbook from Python instead of the CLI.

Usage:
    python examples/provision/run.py [--check]
"""

import asyncio
import logging
import sys
from pathlib import Path

from hostplay.connection import ConnectionProvider
from hostplay.executor import PlaybookExecutor
from hostplay.host_filter import select_hosts
from hostplay.inventory import load_inventory
from hostplay.logging import configure_logging
from hostplay.playbook import load_playbook
from hostplay.progress import TextProgressReporter, render_recap
from hostplay.retry import RetryConfig

HERE = Path(__file__).parent


async def main(check_mode: bool) -> int:
    playbook = load_playbook(HERE / "site.yml")
    inventory = load_inventory(HERE / "inventory.yml")
    hosts = select_hosts(inventory, playbook.hosts)

    executor = PlaybookExecutor(
        provider=ConnectionProvider(connect_timeout=10.0),
        forks=5,
        check_mode=check_mode,
        reports_dir=HERE / "reports",
        retry_config=RetryConfig(max_attempts=2, initial_delay=2.0),
        progress=TextProgressReporter(),
    )
    results = await executor.run(playbook, hosts)
    render_recap(results)

    for name, outcome in results.hosts.items():
        install = outcome.results.get("install nginx")
        if install is not None and install.changed:
            print(f"{name}: nginx was installed on this run")

    return results.exit_code


if __name__ == "__main__":
    configure_logging(level=logging.INFO)
    sys.exit(asyncio.run(main("--check" in sys.argv)))
