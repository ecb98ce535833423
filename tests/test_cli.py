"""Test CLI functionality."""

import json
import logging

import pytest
from click.testing import CliRunner
from conftest import FakeChannel, FakeProvider

from hostplay import __version__
from hostplay.cli import cli, parse_extra_vars

INVENTORY = """
webservers:
  vars:
    ansible_user: deploy
  hosts:
    web01:
      ansible_host: 10.0.0.1
    web02:
      ansible_host: 10.0.0.2
"""

PLAYBOOK = """
name: nginx
hosts: webservers
tasks:
  - name: install nginx
    package: nginx
  - name: start nginx
    service: nginx
    requires: [install nginx]
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """The run command reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "inventory.yml").write_text(INVENTORY)
    (tmp_path / "site.yml").write_text(PLAYBOOK)
    return tmp_path


@pytest.fixture
def fake_provider(monkeypatch):
    provider = FakeProvider(channels={"web01": FakeChannel("web01", packages={"nginx"})})
    monkeypatch.setattr("hostplay.cli.ConnectionProvider", lambda **kwargs: provider)
    return provider


def invoke(*args):
    return CliRunner().invoke(cli, [str(arg) for arg in args])


def test_cli_version():
    """Test CLI version output."""
    result = invoke("--version")
    assert result.exit_code == 0
    assert f"hostplay {__version__}" in result.output


def test_cli_help():
    """Test CLI help output."""
    result = invoke("--help")
    assert result.exit_code == 0
    assert "run" in result.output
    assert "inventory" in result.output
    assert "playbook" in result.output


def test_cli_run_help():
    """Test CLI run command help output."""
    result = invoke("run", "--help")
    assert result.exit_code == 0
    assert "--inventory" in result.output
    assert "--check" in result.output
    assert "--limit" in result.output


def test_cli_missing_inventory(workspace):
    """Test CLI error when inventory not specified."""
    result = invoke("run", workspace / "site.yml")
    assert result.exit_code != 0


def test_playbook_validate(workspace):
    result = invoke("playbook", "validate", workspace / "site.yml")

    assert result.exit_code == 0
    assert "Playbook: nginx (hosts: webservers)" in result.output
    assert "1. install nginx [package, per-host, remote]" in result.output
    assert "requires: install nginx" in result.output
    assert "Playbook is valid" in result.output


def test_playbook_validate_bad_order(tmp_path):
    path = tmp_path / "site.yml"
    path.write_text(
        "tasks:\n"
        "  - name: start nginx\n"
        "    service: nginx\n"
        "    requires: [install nginx]\n"
        "  - name: install nginx\n"
        "    package: nginx\n"
    )

    result = invoke("playbook", "validate", path)

    assert result.exit_code == 1
    assert "install nginx" in result.output


def test_inventory_validate(workspace):
    result = invoke("inventory", "validate", "-i", workspace / "inventory.yml")

    assert result.exit_code == 0
    assert "Loaded 2 host(s)" in result.output
    assert "web01 (deploy@10.0.0.1:22)" in result.output
    assert "Warning: web01: No key file or password" in result.output


def test_inventory_validate_missing_key(tmp_path):
    path = tmp_path / "inventory.yml"
    path.write_text(
        "databases:\n"
        "  hosts:\n"
        "    db01:\n"
        f"      ansible_ssh_private_key_file: {tmp_path / 'missing_key'}\n"
    )

    result = invoke("inventory", "validate", "-i", path, "--check-keys")

    assert result.exit_code == 1
    assert "SSH key not found" in result.output
    assert "1 validation error(s) found" in result.output


def test_inventory_validate_missing_file(tmp_path):
    result = invoke("inventory", "validate", "-i", tmp_path / "missing.yml")

    assert result.exit_code == 1
    assert "Inventory not found" in result.output


def test_run_success(workspace, fake_provider):
    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml")

    assert result.exit_code == 0, result.output
    assert "web01: Skipped tasks: [install nginx]" in result.output
    assert "web02: Succeeded" in result.output
    assert "Recap" in result.output
    assert fake_provider.opens == ["web01", "web02"]


def test_run_unreachable_host(workspace, fake_provider):
    fake_provider.unreachable["web02"] = "ConnectionRefused"

    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml")

    assert result.exit_code == 1
    assert "web01: Skipped tasks: [install nginx]" in result.output
    assert "web02: Failed: connect, Connection to 10.0.0.2:22 refused" in result.output
    assert "1 host(s) failed" in result.output


def test_run_json_output(workspace, fake_provider):
    fake_provider.unreachable["web02"] = "ConnectionRefused"

    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--format", "json")

    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["total"] == 2
    assert data["failed"] == 1
    assert data["hosts"]["web01"]["tasks"]["install nginx"]["reason"] == "already satisfied"
    assert data["hosts"]["web02"]["failed_task"] == "connect"


def test_run_check_mode(workspace, fake_provider):
    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--check")

    assert result.exit_code == 0, result.output
    assert "(check mode)" in result.output
    assert all(not channel.mutations for channel in fake_provider.channels.values())


def test_run_limit(workspace, fake_provider):
    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--limit", "web02")

    assert result.exit_code == 0, result.output
    assert fake_provider.opens == ["web02"]
    assert "web01" not in result.output


def test_run_limit_matches_nothing(workspace, fake_provider):
    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--limit", "db*")

    assert result.exit_code == 1
    assert "No hosts matched" in result.output
    assert fake_provider.opens == []


def test_run_missing_playbook(workspace, fake_provider):
    result = invoke("run", workspace / "missing.yml", "-i", workspace / "inventory.yml")

    assert result.exit_code == 1
    assert "Playbook not found" in result.output


def test_run_extra_vars(workspace, fake_provider):
    (workspace / "site.yml").write_text(
        "hosts: web01\n"
        "vars:\n"
        "  greeting: hello\n"
        "tasks:\n"
        "  - name: greet\n"
        "    shell: echo {{ greeting }}\n"
    )

    result = invoke(
        "run", workspace / "site.yml", "-i", workspace / "inventory.yml", "-e", "greeting=goodbye"
    )

    assert result.exit_code == 0, result.output
    assert fake_provider.channels["web01"].ran("echo goodbye")
    assert not fake_provider.channels["web01"].ran("echo hello")


def test_run_bad_extra_vars(workspace, fake_provider):
    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "-e", "novalue")

    assert result.exit_code == 2
    assert "Expected key=value format" in result.output


def test_run_save_results(workspace, fake_provider):
    path = workspace / "out" / "results.json"

    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--save-results", path)

    assert result.exit_code == 0, result.output
    data = json.loads(path.read_text())
    assert data["playbook"] == "nginx"
    assert list(data["hosts"]) == ["web01", "web02"]


def test_run_writes_reports(workspace, fake_provider):
    (workspace / "report.txt.j2").write_text("{{ host.name }}: {{ results['install nginx'].status }}\n")
    (workspace / "site.yml").write_text(
        PLAYBOOK
        + "  - name: write report\n"
        "    template:\n"
        "      src: report.txt.j2\n"
        "      report: provision\n"
    )

    result = invoke(
        "run",
        workspace / "site.yml",
        "-i",
        workspace / "inventory.yml",
        "--reports-dir",
        workspace / "reports",
        "--run-id",
        "20261019T120000",
    )

    assert result.exit_code == 0, result.output
    report = workspace / "reports" / "20261019T120000_provision_web02.txt"
    assert report.read_text() == "web02: Succeeded\n"


def test_run_config_file(workspace, fake_provider):
    config = workspace / "hostplay.yml"
    config.write_text("output_format: json\nforks: 1\n")

    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--config", config)

    assert result.exit_code == 0
    assert json.loads(result.stdout)["successful"] == 2


def test_run_bad_config_file(workspace, fake_provider):
    config = workspace / "hostplay.yml"
    config.write_text("forks: 0\n")

    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--config", config)

    assert result.exit_code == 1
    assert "forks must be at least 1" in result.output


def test_parse_extra_vars_types():
    assert parse_extra_vars(("app_version=1.2 debug=true", "motd='hello world'", "count=3", "empty=")) == {
        "app_version": 1.2,
        "debug": True,
        "motd": "hello world",
        "count": 3,
        "empty": "",
    }


def test_parse_extra_vars_keeps_structures_as_text():
    assert parse_extra_vars(("items=[a,b]",)) == {"items": "[a,b]"}


def test_parse_extra_vars_invalid():
    with pytest.raises(ValueError, match="Invalid extra var 'debug'"):
        parse_extra_vars(("debug",))


def test_run_id_with_path_rejected(workspace, fake_provider):
    result = invoke("run", workspace / "site.yml", "-i", workspace / "inventory.yml", "--run-id", "../../x")

    assert result.exit_code == 2
    assert "Invalid run id in report file name" in result.output
    assert fake_provider.opens == []
