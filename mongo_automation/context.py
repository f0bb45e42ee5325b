import logging
import shlex
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from mongo_automation import __version__
from mongo_automation.common import ClusterConfig, config_from_dict, config_to_dict, load_config, save_config
from mongo_automation.config import Settings
from mongo_automation.connectivity import ConnectivityChecker
from mongo_automation.database import MongoConnections, make_mongo_client
from mongo_automation.errors import InstallationInProgress, ValidationError
from mongo_automation.events import TEST_DATA_GENERATED, EventBus
from mongo_automation.executor import CommandExecutor, CommandResult, make_ssh_client
from mongo_automation.installer import Installer
from mongo_automation.poller import StatusPoller
from mongo_automation.registry import NodeRegistry
from mongo_automation.replication import ReplicationConfigurator, wait_for_port
from mongo_automation.seed import generate_dummy_data
from mongo_automation.sequencer import ACTIVE_PHASES, InstallationSequencer
from mongo_automation.terminal import TerminalSessions

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 5000
LIVE_LOG_LINES = 50


class AutomationContext:
    """Owns one instance of every component and the wiring between them."""

    def __init__(
        self,
        settings: Settings,
        cfg: Optional[ClusterConfig] = None,
        ssh_client_factory: Callable = make_ssh_client,
        mongo_client_factory: Callable = make_mongo_client,
        port_probe: Callable = wait_for_port,
        seeder: Callable[..., Dict[str, int]] = generate_dummy_data,
        checker: Optional[ConnectivityChecker] = None,
    ):
        self.settings = settings
        self.started_at = time.time()
        self.version = __version__
        if cfg is None:
            cfg = load_config(settings.accounts_path, settings)

        self.events = EventBus()
        self.registry = NodeRegistry(cfg)
        self.executor = CommandExecutor(settings, self.registry.get, ssh_client_factory)
        self.connections = MongoConnections(settings.mongodb_port, mongo_client_factory)
        self.checker = checker or ConnectivityChecker(self.executor, settings.probe_timeout)
        self.installer = Installer(self.executor, cfg)
        self.configurator = ReplicationConfigurator(self.executor, self.connections, cfg, settings, port_probe)
        self.poller = StatusPoller(
            self.registry,
            self.connections,
            self.executor,
            self.events,
            status_interval=settings.status_interval,
            metrics_interval=settings.metrics_interval,
            database_name=cfg.database_name,
        )
        self.seeder = seeder
        self.sequencer = InstallationSequencer(
            settings,
            self.registry,
            self.checker,
            self.installer,
            self.configurator,
            self.connections,
            self.events,
            seeder=seeder,
            on_completed=self.poller.start,
        )
        self.terminals = TerminalSessions(self.executor)

    @property
    def cfg(self) -> ClusterConfig:
        return self.registry.cfg

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    # ------------------------------
    # registry document
    # ------------------------------

    def config_document(self) -> Dict[str, Any]:
        return config_to_dict(self.cfg)

    def replace_config(self, data: Dict[str, Any]) -> ClusterConfig:
        """Validate, persist and apply a full registry document."""
        try:
            cfg = config_from_dict(data, self.settings)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid configuration: {e}", field="nodes") from e
        if self.sequencer.phase in ACTIVE_PHASES:
            raise InstallationInProgress("Configuration cannot change while an installation is running")

        save_config(self.settings.accounts_path, data)
        self.apply_config(cfg)
        logger.info("Configuration saved to %s (%d nodes)", self.settings.accounts_path, len(cfg.nodes))
        return cfg

    def apply_config(self, cfg: ClusterConfig) -> None:
        self.registry.replace_config(cfg)
        self.installer.cfg = cfg
        self.configurator.cfg = cfg
        self.poller.database_name = cfg.database_name
        # hosts may have moved, reconnect lazily
        self.executor.close()
        self.connections.close()

    # ------------------------------
    # operator actions
    # ------------------------------

    def check_connectivity(self) -> Dict[str, Dict[str, Any]]:
        report = self.checker.check(self.registry.nodes)
        self.registry.apply_connectivity(report)
        return report

    def run_command(self, node: str, command: str) -> CommandResult:
        if self.registry.get(node) is None:
            raise ValidationError(f"Unknown node: {node}", field="node")
        return self.executor.run(node, command)

    def run_query(self, node: str, query: str, database: Optional[str] = None) -> Any:
        target = self.registry.get(node)
        if target is None:
            raise ValidationError(f"Unknown node: {node}", field="node")
        return self.connections.run_query(target, database or self.cfg.database_name, query)

    def tail_logs(self, node: str, lines: int = 100) -> str:
        if self.registry.get(node) is None:
            raise ValidationError(f"Unknown node: {node}", field="node")
        if lines < 1 or lines > MAX_LOG_LINES:
            raise ValidationError(f"lines must be between 1 and {MAX_LOG_LINES}", field="lines")
        result = self.executor.run(node, f"tail -n {int(lines)} {shlex.quote(self.cfg.log_path)}")
        return result.stdout

    def live_logs(self, node: str) -> Dict[str, Any]:
        return {"node": node, "logs": self.tail_logs(node, LIVE_LOG_LINES), "timestamp": datetime.utcnow().isoformat()}

    def _seed_args(self, record_count: Optional[int], include_files: Optional[bool]):
        count = self.settings.seed_records if record_count is None else record_count
        if count < 1:
            raise ValidationError("recordCount must be at least 1", field="recordCount")
        files = self.settings.seed_files if include_files is None else include_files
        return count, files

    def seed_cluster(self, record_count: Optional[int] = None, include_files: Optional[bool] = None) -> Dict[str, int]:
        count, files = self._seed_args(record_count, include_files)

        db = self.connections.client(self.registry.primary)[self.cfg.database_name]
        counts = self.seeder(db, record_count=count, include_files=files)
        self.events.publish(TEST_DATA_GENERATED, {"success": True, "counts": counts})
        return counts

    def seed_in_background(self, record_count: Optional[int] = None, include_files: Optional[bool] = None) -> threading.Thread:
        self._seed_args(record_count, include_files)

        def work():
            try:
                self.seed_cluster(record_count, include_files)
            except Exception as e:
                logger.exception("Test data generation failed")
                self.events.publish(TEST_DATA_GENERATED, {"success": False, "error": str(e)})

        t = threading.Thread(target=work, name="seed", daemon=True)
        t.start()
        return t

    # ------------------------------
    # lifecycle
    # ------------------------------

    def start_monitoring_if_reachable(self) -> bool:
        """Start pollers when the primary already answers, e.g. after a restart."""
        primary = self.registry.primary
        if self.connections.ping(primary):
            self.registry.mark_database(primary.name, True)
            self.poller.start()
            return True
        logger.info("Primary %s not reachable yet, monitoring starts after installation", primary.name)
        return False

    def close(self) -> None:
        logger.info("Shutting down...")
        self.poller.stop()
        self.terminals.close_all()
        self.executor.close()
        self.connections.close()
        logger.info("All connections closed")


def build_context(settings: Optional[Settings] = None, **kwargs) -> AutomationContext:
    return AutomationContext(settings or Settings.from_env(), **kwargs)
