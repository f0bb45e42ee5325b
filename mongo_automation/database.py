import json
import logging
import threading
from typing import Any, Callable, Dict

from bson import json_util
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from mongo_automation.common import Node
from mongo_automation.errors import ValidationError

logger = logging.getLogger(__name__)

# read-only administrative commands the dashboard may forward
ALLOWED_QUERY_COMMANDS = {
    "ping",
    "buildInfo",
    "serverStatus",
    "dbStats",
    "collStats",
    "replSetGetStatus",
    "listCollections",
    "count",
    "find",
    "aggregate",
    "distinct",
    "hostInfo",
}
FORBIDDEN_STAGES = {"$out", "$merge"}


def make_mongo_client(node: Node, port: int) -> MongoClient:
    return MongoClient(
        host=node.host,
        port=port,
        directConnection=True,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
        maxPoolSize=10,
    )


def parse_query(query: str) -> Dict[str, Any]:
    """Parse dashboard query text into a command document and vet it."""
    if not query or not query.strip():
        raise ValidationError("Query is required", field="query")
    try:
        doc = json_util.loads(query)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Query must be a JSON command document: {e}", field="query") from e
    if not isinstance(doc, dict) or not doc:
        raise ValidationError("Query must be a non-empty JSON object", field="query")

    name = next(iter(doc))
    if name not in ALLOWED_QUERY_COMMANDS:
        raise ValidationError(f"Command not allowed: {name}", field="query")
    if name == "aggregate":
        for stage in doc.get("pipeline", []):
            if isinstance(stage, dict) and FORBIDDEN_STAGES.intersection(stage):
                raise ValidationError("Pipelines that write ($out/$merge) are not allowed", field="query")
    return doc


def to_jsonable(doc: Any) -> Any:
    return json.loads(json_util.dumps(doc))


class MongoConnections:
    """Per-node MongoClient cache, created lazily and guarded by a lock."""

    def __init__(self, port: int, client_factory: Callable[[Node, int], MongoClient] = make_mongo_client):
        self.port = port
        self._client_factory = client_factory
        self._clients: Dict[str, MongoClient] = {}
        self._lock = threading.Lock()

    def client(self, node: Node) -> MongoClient:
        with self._lock:
            client = self._clients.get(node.name)
            if client is None:
                # MongoClient connects in the background, construction is cheap
                client = self._client_factory(node, self.port)
                self._clients[node.name] = client
            return client

    def connected(self, name: str) -> bool:
        with self._lock:
            return name in self._clients

    def admin_command(self, node: Node, command: Any, value: Any = 1, **kwargs) -> Dict[str, Any]:
        return self.client(node).admin.command(command, value, **kwargs)

    def ping(self, node: Node) -> bool:
        try:
            self.admin_command(node, "ping")
            return True
        except PyMongoError as e:
            logger.debug("ping %s failed: %s", node.name, e)
            return False

    def run_query(self, node: Node, database: str, query: str) -> Any:
        doc = parse_query(query)
        result = self.client(node)[database].command(doc)
        return to_jsonable(result)

    def drop(self, name: str) -> None:
        with self._lock:
            client = self._clients.pop(name, None)
        if client is not None:
            client.close()

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for c in clients:
            c.close()

