import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mongo_automation.config import Settings

PRIMARY = "primary"
SECONDARY = "secondary"
HIDDEN_ANALYTICS = "hidden-analytics"

ROLES = (PRIMARY, SECONDARY, HIDDEN_ANALYTICS)
ROLE_ALIASES = {"analytics": HIDDEN_ANALYTICS, "hidden": HIDDEN_ANALYTICS}
DEFAULT_PRIORITY = {PRIMARY: 2, SECONDARY: 1, HIDDEN_ANALYTICS: 0}

UNKNOWN = "unknown"
REACHABLE = "reachable"
UNREACHABLE = "unreachable"

DEFAULT_NODES = (
    ("hrmlabs-mongo-primary", PRIMARY),
    ("hrmlabs-mongo-secondary", SECONDARY),
    ("hrmlabs-mongo-analytics", HIDDEN_ANALYTICS),
)


@dataclass
class Node:
    name: str
    host: str
    user: str
    role: str  # primary | secondary | hidden-analytics
    priority: int = 1
    ssh_port: int = 22
    ssh_password: Optional[str] = None
    ssh_key_path: Optional[str] = None

    # live state, never persisted
    network: str = UNKNOWN
    ssh: str = UNKNOWN
    database: str = UNKNOWN
    last_checked: Optional[str] = None
    error: Optional[str] = None
    database_error: Optional[str] = None

    @property
    def hidden(self) -> bool:
        return self.role == HIDDEN_ANALYTICS


@dataclass
class ClusterConfig:
    replica_set_name: str
    mongo_version: str
    database_name: str
    db_path: str
    log_path: str
    config_path: str
    nodes: List[Node] = field(default_factory=list)


def normalize_role(role: Optional[str]) -> str:
    value = (role or SECONDARY).strip().lower()
    value = ROLE_ALIASES.get(value, value)
    if value not in ROLES:
        raise ValueError(f"Unknown node role: {role}")
    return value


def node_from_dict(n: Dict[str, Any], settings: Settings) -> Node:
    role = normalize_role(n.get("role"))
    return Node(
        name=n["name"],
        host=n.get("host") or n.get("ip") or n["name"],
        user=n.get("user") or n.get("ssh_user") or settings.ssh_user,
        role=role,
        priority=int(n.get("priority", DEFAULT_PRIORITY[role])),
        ssh_port=int(n.get("port", n.get("ssh_port", 22))),
        ssh_password=n.get("password") or n.get("ssh_password") or settings.ssh_password,
        ssh_key_path=n.get("keyPath") or n.get("ssh_key_path") or settings.ssh_key_path,
    )


def node_to_dict(node: Node) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": node.name,
        "host": node.host,
        "user": node.user,
        "role": node.role,
    }
    if node.priority != DEFAULT_PRIORITY[node.role]:
        data["priority"] = node.priority
    if node.ssh_port != 22:
        data["port"] = node.ssh_port
    return data


def default_config(settings: Settings) -> ClusterConfig:
    nodes = [
        Node(
            name=name,
            host=name,
            user=settings.ssh_user,
            role=role,
            priority=DEFAULT_PRIORITY[role],
            ssh_password=settings.ssh_password,
            ssh_key_path=settings.ssh_key_path,
        )
        for name, role in DEFAULT_NODES
    ]
    return ClusterConfig(
        replica_set_name=settings.replica_set_name,
        mongo_version=settings.mongo_version,
        database_name=settings.database_name,
        db_path="/var/lib/mongo",
        log_path="/var/log/mongodb/mongod.log",
        config_path="/etc/mongod.conf",
        nodes=nodes,
    )


def validate_roles(nodes: List[Node]) -> None:
    primaries = [n.name for n in nodes if n.role == PRIMARY]
    if len(primaries) != 1:
        raise ValueError(f"Exactly one primary node is required, found {len(primaries)}")
    for n in nodes:
        # mongod refuses hidden members that could be elected
        if n.hidden and n.priority != 0:
            raise ValueError(f"Hidden node {n.name} must have priority 0, got {n.priority}")
        if n.priority < 0:
            raise ValueError(f"Node {n.name} has a negative priority")


def config_from_dict(data: Dict[str, Any], settings: Settings) -> ClusterConfig:
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
        raise ValueError("Configuration must be an object with a 'nodes' list")
    nodes = [node_from_dict(n, settings) for n in data["nodes"]]
    names = [n.name for n in nodes]
    if len(set(names)) != len(names):
        raise ValueError("Node names must be unique")
    validate_roles(nodes)

    paths = data.get("paths", {})
    return ClusterConfig(
        replica_set_name=data.get("replicaSetName", settings.replica_set_name),
        mongo_version=str(data.get("mongoVersion", settings.mongo_version)),
        database_name=data.get("databaseName", settings.database_name),
        db_path=paths.get("dbPath", "/var/lib/mongo"),
        log_path=paths.get("logPath", "/var/log/mongodb/mongod.log"),
        config_path=paths.get("configPath", "/etc/mongod.conf"),
        nodes=nodes,
    )


def config_to_dict(cfg: ClusterConfig) -> Dict[str, Any]:
    return {
        "replicaSetName": cfg.replica_set_name,
        "mongoVersion": cfg.mongo_version,
        "databaseName": cfg.database_name,
        "paths": {
            "dbPath": cfg.db_path,
            "logPath": cfg.log_path,
            "configPath": cfg.config_path,
        },
        "nodes": [node_to_dict(n) for n in cfg.nodes],
    }


def load_config(accounts_path: str, settings: Settings) -> ClusterConfig:
    if not os.path.exists(accounts_path):
        return default_config(settings)
    with open(accounts_path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return config_from_dict(data, settings)


def save_config(accounts_path: str, data: Dict[str, Any]) -> None:
    # whole-document rewrite, no partial updates
    with open(accounts_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def get_primary_node(cfg: ClusterConfig) -> Node:
    for n in cfg.nodes:
        if n.role == PRIMARY:
            return n
    raise ValueError("No primary node defined in accounts.json")

