import json
import logging
import posixpath
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from pymongo.errors import OperationFailure, PyMongoError
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from mongo_automation.common import ClusterConfig, Node
from mongo_automation.config import Settings
from mongo_automation.database import MongoConnections
from mongo_automation.errors import CommandError, NodeConnectionError, ReadinessTimeout
from mongo_automation.executor import CommandExecutor, CommandResult

logger = logging.getLogger(__name__)

PID_DIR = "/var/run/mongodb"


class _NoPrimaryYet(Exception):
    pass


def build_mongod_conf(db_path: str, log_path: str, repl_set_name: str, port: int) -> str:
    conf = [
        "storage:",
        f"  dbPath: {db_path}",
        "  journal:",
        "    enabled: true",
        "",
        "systemLog:",
        "  destination: file",
        "  logAppend: true",
        f"  path: {log_path}",
        "",
        "net:",
        f"  port: {port}",
        "  bindIp: 0.0.0.0",
        "",
        "processManagement:",
        "  fork: true",
        f"  pidFilePath: {PID_DIR}/mongod.pid",
        "  timeZoneInfo: /usr/share/zoneinfo",
        "",
        "replication:",
        f"  replSetName: {repl_set_name}",
        "",
        "security:",
        "  authorization: disabled",
    ]
    return "\n".join(conf) + "\n"


def build_logrotate_conf(log_path: str) -> str:
    # Rotate when file exceeds 100M or weekly, keep 12 rotations, compress
    return f"""
{log_path} {{
    weekly
    size 100M
    rotate 12
    compress
    delaycompress
    missingok
    notifempty
    create 640 mongod mongod
    sharedscripts
    postrotate
        /bin/systemctl kill -s USR1 mongod 2>/dev/null || true
    endscript
}}
"""


@dataclass(frozen=True)
class TopologyMember:
    node: str
    host: str
    priority: int
    hidden: bool = False


@dataclass(frozen=True)
class ReplicationTopology:
    name: str
    members: Tuple[TopologyMember, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, cfg: ClusterConfig) -> "ReplicationTopology":
        members = tuple(
            TopologyMember(node=n.name, host=n.host, priority=n.priority, hidden=n.hidden)
            for n in cfg.nodes
        )
        return cls(name=cfg.replica_set_name, members=members)

    def to_document(self, port: int) -> Dict[str, Any]:
        members = []
        for i, m in enumerate(self.members):
            member: Dict[str, Any] = {"_id": i, "host": f"{m.host}:{port}", "priority": m.priority}
            if m.hidden:
                member["hidden"] = True
            members.append(member)
        return {"_id": self.name, "members": members}


def wait_for_port(host: str, port: int, timeout: float = 3.0) -> None:
    sock = socket.create_connection((host, port), timeout=timeout)
    sock.close()


def has_primary(status: Optional[Dict[str, Any]]) -> bool:
    if not status:
        return False
    return any(m.get("stateStr") == "PRIMARY" for m in status.get("members", []))


class ReplicationConfigurator:
    def __init__(
        self,
        executor: CommandExecutor,
        connections: MongoConnections,
        cfg: ClusterConfig,
        settings: Settings,
        port_probe: Callable[[str, int, float], None] = wait_for_port,
    ):
        self.executor = executor
        self.connections = connections
        self.cfg = cfg
        self.settings = settings
        self.port_probe = port_probe

    @property
    def port(self) -> int:
        return self.settings.mongodb_port

    def _retrying(self, timeout: float, **kwargs) -> Retrying:
        return Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self.settings.ready_interval),
            **kwargs,
        )

    # ------------------------------
    # per-node configuration
    # ------------------------------

    def configure(self, node: Node) -> CommandResult:
        conf = self.cfg.config_path
        log_dir = posixpath.dirname(self.cfg.log_path)
        logger.info("Configuring replication on %s...", node.name)

        run = self.executor.run_checked
        run(node, "systemctl stop mongod", "stop mongod")
        run(node, f"if [ -f {conf} ]; then cp {conf} {conf}.backup; fi", "back up mongod.conf")

        conf_text = build_mongod_conf(self.cfg.db_path, self.cfg.log_path, self.cfg.replica_set_name, self.port)
        self.executor.write_file(node, "/tmp/mongod.conf", conf_text.encode("utf-8"))
        run(node, f"mv /tmp/mongod.conf {conf} && chown mongod:mongod {conf} && chmod 644 {conf}", "install mongod.conf")
        run(
            node,
            f"mkdir -p {log_dir} {PID_DIR} && chown -R mongod:mongod {log_dir} {PID_DIR}",
            "prepare log directories",
        )

        lr = build_logrotate_conf(self.cfg.log_path)
        self.executor.write_file(node, "/tmp/mongod-logrotate", lr.encode("utf-8"))
        run(
            node,
            "mv /tmp/mongod-logrotate /etc/logrotate.d/mongod && chown root:root /etc/logrotate.d/mongod "
            "&& chmod 0644 /etc/logrotate.d/mongod",
            "install logrotate policy",
        )

        result = run(node, "systemctl restart mongod && systemctl enable mongod", "start mongod")
        self.wait_until_ready(node)
        logger.info("Replication configured on %s", node.name)
        return result

    def wait_until_ready(self, node: Node) -> None:
        logger.info("Waiting for mongod TCP on %s:%s...", node.host, self.port)
        try:
            for attempt in self._retrying(self.settings.ready_timeout, retry=retry_if_exception_type(OSError)):
                with attempt:
                    self.port_probe(node.host, self.port, 3.0)
        except RetryError as e:
            raise ReadinessTimeout(
                f"mongod on {node.name} not accepting connections after {self.settings.ready_timeout:.0f}s"
            ) from e

    # ------------------------------
    # replica set initiation
    # ------------------------------

    def _status(self, node: Node) -> Optional[Dict[str, Any]]:
        try:
            return self.connections.admin_command(node, "replSetGetStatus")
        except OperationFailure:
            # NotYetInitialized and friends
            return None

    def initialize_topology(self, topology: ReplicationTopology, primary: Node) -> CommandResult:
        doc = self.topology_document(topology)
        command = f"replSetInitiate {json.dumps(doc)}"
        try:
            if self._status(primary) is not None:
                logger.info("Replica set %s already initiated, skipping replSetInitiate", topology.name)
                return CommandResult(0, "already initiated", "", primary.name, command, skipped=True)

            logger.info("Initiating replica set %s with %d members", topology.name, len(doc["members"]))
            reply = self.connections.admin_command(primary, "replSetInitiate", doc)
        except OperationFailure as e:
            result = CommandResult(1, "", str(e), primary.name, command)
            raise CommandError("Replica set initialization failed", result) from e
        except PyMongoError as e:
            raise NodeConnectionError(primary.name, f"cannot reach mongod: {e}") from e

        self.wait_for_primary(primary)
        self._log_status(primary)
        return CommandResult(0, json.dumps(reply, default=str), "", primary.name, command)

    def topology_document(self, topology: ReplicationTopology) -> Dict[str, Any]:
        return topology.to_document(self.port)

    def wait_for_primary(self, primary: Node) -> Dict[str, Any]:
        status: Optional[Dict[str, Any]] = None
        try:
            for attempt in self._retrying(
                self.settings.election_timeout,
                retry=retry_if_exception_type((PyMongoError, _NoPrimaryYet)),
            ):
                with attempt:
                    status = self._status(primary)
                    if not has_primary(status):
                        raise _NoPrimaryYet()
        except RetryError as e:
            raise ReadinessTimeout(
                f"No PRIMARY elected within {self.settings.election_timeout:.0f}s"
            ) from e
        logger.info("Replica set PRIMARY elected.")
        return status

    def _log_status(self, primary: Node) -> None:
        # informational only, nothing downstream depends on it
        try:
            status = self.connections.admin_command(primary, "replSetGetStatus")
        except PyMongoError as e:
            logger.warning("Replica set status unavailable: %s", e)
            return
        for m in status.get("members", []):
            logger.info("Member %s: %s", m.get("name"), m.get("stateStr"))
