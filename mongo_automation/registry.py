import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from mongo_automation.common import (
    REACHABLE,
    UNREACHABLE,
    ClusterConfig,
    Node,
    get_primary_node,
)


def _now() -> str:
    return datetime.utcnow().isoformat()


class NodeRegistry:
    """In-memory node list with the live state gathered by checks and polls.

    Node identities and roles come from the registry document and stay fixed;
    only connectivity, database state and metrics change at runtime.
    """

    def __init__(self, cfg: ClusterConfig):
        self._lock = threading.Lock()
        self.cfg = cfg
        self.metrics: Dict[str, Dict[str, Any]] = {}
        self.replication_status: Optional[Dict[str, Any]] = None
        self.last_updated: Optional[str] = None

    @property
    def nodes(self) -> List[Node]:
        return list(self.cfg.nodes)

    def names(self) -> List[str]:
        return [n.name for n in self.cfg.nodes]

    def get(self, name: str) -> Optional[Node]:
        for n in self.cfg.nodes:
            if n.name == name:
                return n
        return None

    @property
    def primary(self) -> Node:
        return get_primary_node(self.cfg)

    def replace_config(self, cfg: ClusterConfig) -> None:
        with self._lock:
            self.cfg = cfg
            known = {n.name for n in cfg.nodes}
            self.metrics = {k: v for k, v in self.metrics.items() if k in known}

    def apply_connectivity(self, report: Dict[str, Dict[str, bool]]) -> None:
        stamp = _now()
        with self._lock:
            for name, result in report.items():
                node = self.get(name)
                if node is None:
                    continue
                node.network = REACHABLE if result.get("network") else UNREACHABLE
                node.ssh = REACHABLE if result.get("ssh") else UNREACHABLE
                node.error = result.get("error")
                node.last_checked = stamp

    def mark_database(self, name: str, ok: bool, error: Optional[str] = None) -> None:
        with self._lock:
            node = self.get(name)
            if node is None:
                return
            node.database = REACHABLE if ok else UNREACHABLE
            node.database_error = None if ok else error
            node.last_checked = _now()

    def record_metrics(self, metrics: Dict[str, Dict[str, Any]]) -> None:
        # merge per node so one failing host never wipes the others
        with self._lock:
            for name, values in metrics.items():
                previous = self.metrics.get(name, {})
                if "error" in values:
                    merged = dict(previous)
                    merged["error"] = values["error"]
                    merged["error_at"] = values.get("timestamp", _now())
                    self.metrics[name] = merged
                else:
                    self.metrics[name] = dict(values)

    def record_replication_status(self, status: Dict[str, Any]) -> None:
        with self._lock:
            self.replication_status = status
            self.last_updated = _now()

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = []
            for n in self.cfg.nodes:
                rows.append({
                    "name": n.name,
                    "host": n.host,
                    "role": n.role,
                    "priority": n.priority,
                    "hidden": n.hidden,
                    "network": n.network,
                    "ssh": n.ssh,
                    "database": n.database,
                    "lastChecked": n.last_checked,
                    "error": n.error,
                    "databaseError": n.database_error,
                    "stats": dict(self.metrics.get(n.name, {})),
                    "lastUpdated": self.last_updated,
                })
            return rows
