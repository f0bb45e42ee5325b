"""Tests for query vetting and the Mongo client cache."""

import pytest

from mongo_automation.database import ALLOWED_QUERY_COMMANDS, MongoConnections, parse_query, to_jsonable
from mongo_automation.errors import ValidationError


class TestParseQuery:
    @pytest.mark.parametrize("query", ["", "   ", None])
    def test_empty(self, query):
        with pytest.raises(ValidationError):
            parse_query(query)

    def test_not_json(self):
        with pytest.raises(ValidationError):
            parse_query("db.employees.find()")

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            parse_query("[1, 2]")

    @pytest.mark.parametrize("command", ["dropDatabase", "shutdown", "eval", "insert", "replSetReconfig"])
    def test_writes_and_admin_commands_rejected(self, command):
        with pytest.raises(ValidationError):
            parse_query('{"%s": 1}' % command)

    @pytest.mark.parametrize("stage", ["$out", "$merge"])
    def test_writing_pipeline_rejected(self, stage):
        query = '{"aggregate": "employees", "pipeline": [{"$match": {}}, {"%s": "copy"}], "cursor": {}}' % stage
        with pytest.raises(ValidationError):
            parse_query(query)

    def test_read_pipeline_allowed(self):
        doc = parse_query('{"aggregate": "employees", "pipeline": [{"$group": {"_id": "$company_id"}}], "cursor": {}}')
        assert next(iter(doc)) == "aggregate"

    def test_extended_json(self):
        doc = parse_query('{"find": "employees", "filter": {"hire_date": {"$gt": {"$date": "2020-01-01T00:00:00Z"}}}}')
        assert doc["filter"]["hire_date"]["$gt"].year == 2020

    def test_allowlist_is_read_only(self):
        assert "ping" in ALLOWED_QUERY_COMMANDS
        assert not {"insert", "update", "delete", "drop"} & ALLOWED_QUERY_COMMANDS


class TestConnections:
    def test_client_cached_and_closed(self, cfg, mongo):
        connections = MongoConnections(27017, mongo.factory)
        node = cfg.nodes[0]
        assert connections.client(node) is connections.client(node)
        assert mongo.clients_created == 1
        assert connections.connected(node.name)
        connections.close()
        assert not connections.connected(node.name)

    def test_admin_command_passes_value(self, cfg, mongo):
        connections = MongoConnections(27017, mongo.factory)
        doc = {"_id": "rs0", "members": [{"_id": 0, "host": "10.0.0.1:27017", "priority": 2}]}
        connections.admin_command(cfg.nodes[0], "replSetInitiate", doc)
        assert mongo.initiate_calls == [doc]

    def test_ping(self, cfg, mongo):
        connections = MongoConnections(27017, mongo.factory)
        assert connections.ping(cfg.nodes[0])
        mongo.down.add(cfg.nodes[1].name)
        assert not connections.ping(cfg.nodes[1])


def test_to_jsonable_handles_bson_types():
    from datetime import datetime

    from bson import ObjectId

    out = to_jsonable({"_id": ObjectId("0123456789ab0123456789ab"), "at": datetime(2024, 1, 1)})
    assert out["_id"] == {"$oid": "0123456789ab0123456789ab"}
    assert "$date" in out["at"]
