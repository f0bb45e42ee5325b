"""Tests for node configuration and replica set initiation."""

from unittest.mock import MagicMock

import pytest

from mongo_automation.database import MongoConnections
from mongo_automation.errors import CommandError, ReadinessTimeout
from mongo_automation.executor import CommandExecutor
from mongo_automation.registry import NodeRegistry
from mongo_automation.replication import (
    ReplicationConfigurator,
    ReplicationTopology,
    build_logrotate_conf,
    build_mongod_conf,
    has_primary,
)

PRIMARY = "hrmlabs-mongo-primary"


@pytest.fixture
def registry(cfg):
    return NodeRegistry(cfg)


@pytest.fixture
def configurator(settings, cfg, fleet, mongo, registry):
    executor = CommandExecutor(settings, registry.get, fleet.factory)
    connections = MongoConnections(settings.mongodb_port, mongo.factory)
    conf = ReplicationConfigurator(executor, connections, cfg, settings, port_probe=MagicMock())
    yield conf
    executor.close()
    connections.close()


class TestTopology:
    def test_document_priorities_hidden_and_order(self, cfg):
        doc = ReplicationTopology.from_config(cfg).to_document(27017)
        assert doc["_id"] == "hrmlabsrs"
        assert [m["_id"] for m in doc["members"]] == [0, 1, 2]
        assert [m["host"] for m in doc["members"]] == [
            "hrmlabs-mongo-primary:27017",
            "hrmlabs-mongo-secondary:27017",
            "hrmlabs-mongo-analytics:27017",
        ]
        assert [m["priority"] for m in doc["members"]] == [2, 1, 0]
        assert "hidden" not in doc["members"][0]
        assert "hidden" not in doc["members"][1]
        assert doc["members"][2]["hidden"] is True

    def test_topology_is_immutable(self, cfg):
        topology = ReplicationTopology.from_config(cfg)
        with pytest.raises(Exception):
            topology.name = "other"

    def test_has_primary(self):
        assert has_primary({"members": [{"stateStr": "SECONDARY"}, {"stateStr": "PRIMARY"}]})
        assert not has_primary({"members": [{"stateStr": "STARTUP2"}]})
        assert not has_primary(None)


class TestTemplates:
    def test_mongod_conf(self):
        text = build_mongod_conf("/var/lib/mongo", "/var/log/mongodb/mongod.log", "hrmlabsrs", 27017)
        assert "  dbPath: /var/lib/mongo\n" in text
        assert "  bindIp: 0.0.0.0\n" in text
        assert "  port: 27017\n" in text
        assert "  replSetName: hrmlabsrs\n" in text
        assert "pidFilePath: /var/run/mongodb/mongod.pid" in text

    def test_logrotate_conf(self):
        text = build_logrotate_conf("/var/log/mongodb/mongod.log")
        assert "/var/log/mongodb/mongod.log {" in text
        assert "create 640 mongod mongod" in text


class TestConfigure:
    def test_configure_writes_config_and_restarts(self, configurator, cfg, fleet):
        node = cfg.nodes[0]
        result = configurator.configure(node)
        host = fleet[PRIMARY]

        assert result.ok
        assert b"replSetName: hrmlabsrs" in host.files["/tmp/mongod.conf"]
        assert "/tmp/mongod-logrotate" in host.files
        stop = next(i for i, c in enumerate(host.commands) if c == "systemctl stop mongod")
        start = next(i for i, c in enumerate(host.commands) if "systemctl restart mongod" in c)
        assert stop < start
        assert host.ran("cp /etc/mongod.conf /etc/mongod.conf.backup")
        configurator.port_probe.assert_called_with(node.host, 27017, 3.0)

    def test_readiness_times_out(self, configurator, cfg):
        configurator.port_probe.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(ReadinessTimeout):
            configurator.configure(cfg.nodes[0])

    def test_readiness_retries_until_port_opens(self, configurator, cfg):
        configurator.port_probe.side_effect = [ConnectionRefusedError(), ConnectionRefusedError(), None]
        configurator.wait_until_ready(cfg.nodes[0])
        assert configurator.port_probe.call_count == 3

    def test_failed_restart_raises(self, configurator, cfg, fleet):
        fleet[PRIMARY].on("systemctl restart mongod", 1, "", "Job for mongod.service failed")
        with pytest.raises(CommandError):
            configurator.configure(cfg.nodes[0])
        configurator.port_probe.assert_not_called()


class TestInitialize:
    def test_initiate_once_then_skip(self, configurator, cfg, mongo, registry):
        topology = ReplicationTopology.from_config(cfg)

        first = configurator.initialize_topology(topology, registry.primary)
        second = configurator.initialize_topology(topology, registry.primary)

        assert not first.skipped
        assert second.skipped
        assert len(mongo.initiate_calls) == 1
        assert mongo.initiate_calls[0]["members"][2]["hidden"] is True

    def test_election_timeout(self, configurator, cfg, mongo, registry):
        mongo.elect = False
        with pytest.raises(ReadinessTimeout):
            configurator.initialize_topology(ReplicationTopology.from_config(cfg), registry.primary)
        assert len(mongo.initiate_calls) == 1
