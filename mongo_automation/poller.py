import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import PyMongoError

from mongo_automation.database import MongoConnections, to_jsonable
from mongo_automation.errors import AutomationError, TransientQueryError
from mongo_automation.events import NODE_STATS, REPLICATION_STATUS, EventBus
from mongo_automation.executor import CommandExecutor
from mongo_automation.registry import NodeRegistry

logger = logging.getLogger(__name__)

CPU_COMMAND = "top -bn1 | grep 'Cpu(s)' | awk '{print $2}' | cut -d'%' -f1"
MEMORY_COMMAND = "free | grep Mem | awk '{printf \"%.1f\", $3/$2 * 100.0}'"
DISK_COMMAND = "df -h / | awk 'NR==2{printf \"%s\", $5}'"


def _as_float(text: str) -> float:
    try:
        return float(text.strip())
    except ValueError:
        return 0.0


def summarize_members(status: Dict[str, Any]) -> List[Dict[str, Any]]:
    primary_optime = None
    for m in status.get("members", []):
        if m.get("stateStr") == "PRIMARY":
            primary_optime = m.get("optimeDate")
    rows = []
    for m in status.get("members", []):
        lag = None
        optime = m.get("optimeDate")
        if primary_optime is not None and optime is not None:
            try:
                lag = (primary_optime - optime).total_seconds()
            except TypeError:
                lag = None
        rows.append({
            "name": m.get("name"),
            "state": m.get("stateStr"),
            "health": m.get("health"),
            "optime": str(optime) if optime is not None else None,
            "lag_seconds": lag,
        })
    return rows


class StatusPoller:
    """Replication status and host metrics on two independent timers."""

    def __init__(
        self,
        registry: NodeRegistry,
        connections: MongoConnections,
        executor: CommandExecutor,
        events: EventBus,
        status_interval: float = 10.0,
        metrics_interval: float = 30.0,
        database_name: str = "hrmlabs",
    ):
        self.registry = registry
        self.connections = connections
        self.executor = executor
        self.events = events
        self.status_interval = status_interval
        self.metrics_interval = metrics_interval
        self.database_name = database_name
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------
    # single ticks
    # ------------------------------

    def poll(self) -> Optional[Dict[str, Any]]:
        primary = self.registry.primary
        try:
            admin = self.connections.client(primary).admin
            status = admin.command("replSetGetStatus")
            server = admin.command("serverStatus")
            db_stats = self.connections.client(primary)[self.database_name].command("dbStats")
        except PyMongoError as e:
            err = TransientQueryError(f"status query on {primary.name} failed: {e}")
            logger.error("Error getting replica set status: %s", err)
            self.registry.mark_database(primary.name, False, str(err))
            return None

        payload = to_jsonable(status)
        payload["summary"] = summarize_members(status)
        payload["serverStatus"] = to_jsonable({
            "uptime": server.get("uptime"),
            "connections": server.get("connections"),
            "network": server.get("network"),
            "opcounters": server.get("opcounters"),
        })
        payload["dbStats"] = to_jsonable(db_stats)
        payload["timestamp"] = datetime.utcnow().isoformat()

        self.registry.mark_database(primary.name, True)
        self.registry.record_replication_status(payload)
        return payload

    def _node_metrics(self, name: str) -> Dict[str, Any]:
        cpu = self.executor.run(name, CPU_COMMAND, timeout=15)
        mem = self.executor.run(name, MEMORY_COMMAND, timeout=15)
        disk = self.executor.run(name, DISK_COMMAND, timeout=15)
        return {
            "cpu": _as_float(cpu.stdout),
            "memory": _as_float(mem.stdout),
            "disk": disk.stdout.strip() or "0%",
            "timestamp": datetime.utcnow().isoformat(),
        }

    def collect_metrics(self) -> Dict[str, Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for name in self.registry.names():
            try:
                stats[name] = self._node_metrics(name)
            except AutomationError as e:
                logger.warning("Metrics for %s unavailable: %s", name, e)
                stats[name] = {"error": str(e), "timestamp": datetime.utcnow().isoformat()}
        self.registry.record_metrics(stats)
        return stats

    # ------------------------------
    # background loops
    # ------------------------------

    def _status_tick(self) -> None:
        status = self.poll()
        if status is not None:
            self.events.publish(REPLICATION_STATUS, status)

    def _metrics_tick(self) -> None:
        self.events.publish(NODE_STATS, self.collect_metrics())

    def _loop(self, tick: Callable[[], None], interval: float) -> None:
        while not self._stop.is_set():
            try:
                tick()
            except Exception:
                logger.exception("Monitoring tick failed")
            self._stop.wait(interval)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(self._status_tick, self.status_interval), name="status-poller", daemon=True),
            threading.Thread(target=self._loop, args=(self._metrics_tick, self.metrics_interval), name="metrics-poller", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info("System monitoring started (status every %ss, metrics every %ss)", self.status_interval, self.metrics_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
