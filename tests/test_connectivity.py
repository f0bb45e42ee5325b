"""Tests for the pre-flight connectivity gate and how the registry records it."""

from unittest.mock import MagicMock

import pytest

from mongo_automation.common import REACHABLE, UNKNOWN, UNREACHABLE
from mongo_automation.connectivity import ConnectivityChecker, failed_nodes, require_all
from mongo_automation.errors import NodeConnectionError
from mongo_automation.executor import CommandResult
from mongo_automation.registry import NodeRegistry

PRIMARY = "hrmlabs-mongo-primary"
SECONDARY = "hrmlabs-mongo-secondary"
ANALYTICS = "hrmlabs-mongo-analytics"


def make_executor(ping_ok=(), ssh_ok=(), ssh_crash=()):
    executor = MagicMock()

    def run(target, command, timeout=None):
        host = command.split()[-1].strip("'")
        code = 0 if host in ping_ok else 1
        return CommandResult(code, "", "", target, command)

    def probe(node, timeout):
        if node.name in ssh_crash:
            raise RuntimeError("transport exploded")
        return node.name in ssh_ok

    executor.run.side_effect = run
    executor.probe.side_effect = probe
    return executor


class TestConnectivityChecker:
    def test_every_node_gets_an_entry_when_everything_fails(self, cfg):
        checker = ConnectivityChecker(make_executor(), timeout=1)
        report = checker.check(cfg.nodes)
        assert set(report) == {PRIMARY, SECONDARY, ANALYTICS}
        assert all(r == {"network": False, "ssh": False} for r in report.values())

    def test_mixed_results(self, cfg):
        executor = make_executor(ping_ok={PRIMARY, SECONDARY}, ssh_ok={PRIMARY})
        report = ConnectivityChecker(executor, timeout=1).check(cfg.nodes)
        assert report[PRIMARY] == {"network": True, "ssh": True}
        assert report[SECONDARY] == {"network": True, "ssh": False}
        assert report[ANALYTICS] == {"network": False, "ssh": False}
        assert sorted(failed_nodes(report)) == [ANALYTICS, SECONDARY]

    def test_crashing_probe_still_yields_entry(self, cfg):
        executor = make_executor(ping_ok={PRIMARY, SECONDARY, ANALYTICS}, ssh_ok={PRIMARY, SECONDARY}, ssh_crash={ANALYTICS})
        report = ConnectivityChecker(executor, timeout=1).check(cfg.nodes)
        assert report[ANALYTICS]["network"] is False
        assert report[ANALYTICS]["ssh"] is False
        assert "transport exploded" in report[ANALYTICS]["error"]
        assert report[PRIMARY] == {"network": True, "ssh": True}

    def test_ping_uses_probe_timeout(self, cfg):
        executor = make_executor()
        ConnectivityChecker(executor, timeout=3).check(cfg.nodes[:1])
        command = executor.run.call_args[0][1]
        assert command.startswith("ping -c 1 -W 3 ")

    def test_checker_does_not_mutate_nodes(self, cfg):
        ConnectivityChecker(make_executor(), timeout=1).check(cfg.nodes)
        assert all(n.network == UNKNOWN and n.ssh == UNKNOWN for n in cfg.nodes)

    def test_empty_node_list(self):
        assert ConnectivityChecker(make_executor()).check([]) == {}


class TestGate:
    def test_require_all_names_failing_nodes(self):
        report = {
            PRIMARY: {"network": True, "ssh": True},
            SECONDARY: {"network": True, "ssh": False},
            ANALYTICS: {"network": False, "ssh": False},
        }
        with pytest.raises(NodeConnectionError) as info:
            require_all(report)
        assert SECONDARY in str(info.value)
        assert ANALYTICS in str(info.value)
        assert PRIMARY not in str(info.value).split(":")[0]

    def test_require_all_passes(self):
        require_all({PRIMARY: {"network": True, "ssh": True}})


class TestRegistry:
    def test_apply_connectivity(self, cfg):
        registry = NodeRegistry(cfg)
        registry.apply_connectivity({
            PRIMARY: {"network": True, "ssh": True},
            SECONDARY: {"network": True, "ssh": False},
            "stranger": {"network": True, "ssh": True},
        })
        primary = registry.get(PRIMARY)
        secondary = registry.get(SECONDARY)
        assert primary.network == REACHABLE and primary.ssh == REACHABLE
        assert secondary.network == REACHABLE and secondary.ssh == UNREACHABLE
        assert primary.last_checked is not None
        assert registry.get(ANALYTICS).network == UNKNOWN

    def test_snapshot_shape(self, cfg):
        registry = NodeRegistry(cfg)
        registry.record_metrics({PRIMARY: {"cpu": 10.0, "memory": 20.0, "disk": "5%"}})
        rows = {r["name"]: r for r in registry.snapshot()}
        assert rows[PRIMARY]["stats"]["cpu"] == 10.0
        assert rows[ANALYTICS]["hidden"] is True
        assert rows[ANALYTICS]["priority"] == 0
        assert rows[SECONDARY]["stats"] == {}

    def test_database_recovery_keeps_connectivity_error(self, cfg):
        registry = NodeRegistry(cfg)
        registry.apply_connectivity({SECONDARY: {"network": True, "ssh": False, "error": "auth failed"}})
        registry.mark_database(SECONDARY, False, "connection refused")
        registry.mark_database(SECONDARY, True)

        row = next(r for r in registry.snapshot() if r["name"] == SECONDARY)
        assert row["error"] == "auth failed"
        assert row["databaseError"] is None
        assert row["database"] == REACHABLE
