"""Tests for host selection and --limit filtering."""

import pytest

from hostplay.exceptions import InventoryError
from hostplay.host_filter import (
    filter_hosts,
    format_filter_summary,
    match_host,
    parse_limit_pattern,
    select_hosts,
)
from hostplay.inventory import load_inventory_data


@pytest.fixture
def inventory():
    return load_inventory_data(
        {
            "webservers": {"hosts": ["web01", "web02", "web03"]},
            "databases": {"hosts": ["db01", "db02"]},
            "canary": {"hosts": ["web03"]},
        }
    )


def names(hosts):
    return [host.name for host in hosts]


class TestParseLimitPattern:
    """Tests for pattern parsing."""

    def test_empty(self):
        pattern = parse_limit_pattern(None)

        assert not pattern.has_includes
        assert not pattern.excludes

    def test_mixed_parts(self):
        pattern = parse_limit_pattern("web01, db*, !db02, @canary, !@databases,")

        assert pattern.exact == {"web01"}
        assert pattern.globs == {"db*"}
        assert pattern.excludes == {"db02"}
        assert pattern.groups == {"canary"}
        assert pattern.exclude_groups == {"databases"}


class TestMatchHost:
    """Tests for match_host."""

    def test_exclusion_wins(self):
        pattern = parse_limit_pattern("web*,!web02")

        assert match_host("web01", pattern)
        assert not match_host("web02", pattern)
        assert not match_host("db01", pattern)

    def test_exclusions_only(self):
        pattern = parse_limit_pattern("!db*")

        assert match_host("web01", pattern)
        assert not match_host("db01", pattern)

    def test_group_members(self):
        pattern = parse_limit_pattern("@canary")

        assert match_host("web03", pattern, {"web03"})
        assert not match_host("web01", pattern, {"web03"})


class TestFilterHosts:
    """Tests for filter_hosts."""

    def test_no_limit_keeps_everything(self, inventory):
        hosts = list(inventory.get_all_hosts().values())

        assert filter_hosts(hosts, None) == hosts

    def test_keeps_inventory_order(self, inventory):
        hosts = list(inventory.get_all_hosts().values())

        assert names(filter_hosts(hosts, "db01,web02")) == ["web02", "db01"]

    def test_group_limit(self, inventory):
        hosts = list(inventory.get_all_hosts().values())

        assert names(filter_hosts(hosts, "@canary,db01", inventory)) == ["web03", "db01"]


class TestSelectHosts:
    """Tests for playbook host pattern resolution."""

    def test_all(self, inventory):
        assert names(select_hosts(inventory)) == ["web01", "web02", "web03", "db01", "db02"]

    def test_bare_group_name(self, inventory):
        assert names(select_hosts(inventory, "databases")) == ["db01", "db02"]

    def test_group_with_limit(self, inventory):
        assert names(select_hosts(inventory, "webservers", limit="!@canary,!web01")) == ["web02"]

    def test_limit_outside_pattern_selects_nothing(self, inventory):
        assert select_hosts(inventory, "webservers", limit="db01") == []

    def test_unknown_group(self, inventory):
        with pytest.raises(InventoryError, match="Unknown group"):
            select_hosts(inventory, "@caches")

    def test_unknown_host(self, inventory):
        with pytest.raises(InventoryError, match="Unknown host"):
            select_hosts(inventory, "web01,cache01")


class TestFilterSummary:
    def test_all_matched(self):
        assert format_filter_summary(3, 3, "web*") == "All 3 host(s) matched filter: web*"

    def test_some_excluded(self):
        assert format_filter_summary(5, 2, "web0[12]") == "Filter 'web0[12]': 2/5 hosts (3 excluded)"
