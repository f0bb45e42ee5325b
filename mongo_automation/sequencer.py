import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from mongo_automation.config import Settings
from mongo_automation.connectivity import ConnectivityChecker, require_all
from mongo_automation.database import MongoConnections
from mongo_automation.errors import InstallationInProgress
from mongo_automation.events import INSTALLATION_LOG, INSTALLATION_STATUS, EventBus
from mongo_automation.installer import Installer
from mongo_automation.registry import NodeRegistry
from mongo_automation.replication import ReplicationConfigurator, ReplicationTopology
from mongo_automation.seed import generate_dummy_data

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 1000
TRIMMED_LOG_ENTRIES = 500

_LOG_LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class Phase(str, Enum):
    IDLE = "idle"
    INSTALLING = "installing"
    CONFIGURING = "configuring"
    TESTING = "testing"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_PHASES = {Phase.INSTALLING, Phase.CONFIGURING, Phase.TESTING}
TERMINAL_PHASES = {Phase.COMPLETED, Phase.ERROR}

_PHASE_RANK = {
    Phase.IDLE: 0,
    Phase.INSTALLING: 1,
    Phase.CONFIGURING: 2,
    Phase.TESTING: 3,
    Phase.COMPLETED: 4,
    Phase.ERROR: 4,
}


@dataclass
class InstallationRun:
    run_id: Optional[str] = None
    phase: Phase = Phase.IDLE
    progress: int = 0
    current_step: str = ""
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    logs: List[Dict[str, str]] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_PHASES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "phase": self.phase.value,
            "progress": self.progress,
            "currentStep": self.current_step,
            "error": self.error,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "logs": list(self.logs),
        }


class InstallationSequencer:
    """Drives the ordered setup pipeline and tracks it as one InstallationRun.

    Pipeline: local dependencies -> connectivity gate -> per-node install ->
    per-node configure -> replica set initiation -> test data. The first
    failure moves the run to ``error`` and nothing after it executes; remote
    changes already applied stay in place.
    """

    def __init__(
        self,
        settings: Settings,
        registry: NodeRegistry,
        checker: ConnectivityChecker,
        installer: Installer,
        configurator: ReplicationConfigurator,
        connections: MongoConnections,
        events: EventBus,
        seeder: Callable[..., Dict[str, int]] = generate_dummy_data,
        on_completed: Optional[Callable[[], None]] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.checker = checker
        self.installer = installer
        self.configurator = configurator
        self.connections = connections
        self.events = events
        self.seeder = seeder
        self.on_completed = on_completed

        self.skip_deps = False
        self.skip_connectivity = False

        self._lock = threading.RLock()
        self._run = InstallationRun()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------
    # state
    # ------------------------------

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return self._run.to_dict()

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._run.phase

    def log(self, message: str, type: str = "info") -> Dict[str, str]:
        entry = {"timestamp": datetime.utcnow().isoformat(), "type": type, "message": message}
        with self._lock:
            self._run.logs.append(entry)
            if len(self._run.logs) > MAX_LOG_ENTRIES:
                self._run.logs = self._run.logs[-TRIMMED_LOG_ENTRIES:]
        logger.log(_LOG_LEVELS.get(type, logging.INFO), message)
        self.events.publish(INSTALLATION_LOG, entry)
        return entry

    def _update(self, phase: Phase, progress: int, step: str) -> None:
        with self._lock:
            run = self._run
            if _PHASE_RANK[phase] < _PHASE_RANK[run.phase]:
                raise ValueError(f"phase cannot move from {run.phase.value} back to {phase.value}")
            if run.phase in TERMINAL_PHASES:
                raise ValueError(f"run already finished as {run.phase.value}")
            run.phase = phase
            run.progress = max(run.progress, min(100, progress))
            run.current_step = step
            if phase in TERMINAL_PHASES:
                run.finished_at = datetime.utcnow().isoformat()
            snapshot = run.to_dict()
        self.events.publish(INSTALLATION_STATUS, snapshot)
        self.log(f"Phase: {phase.value}, Progress: {snapshot['progress']}%, Step: {step}")

    def _claim(self) -> None:
        with self._lock:
            if self._run.active:
                logger.warning("Installation trigger rejected: run %s is %s", self._run.run_id, self._run.phase.value)
                raise InstallationInProgress("Installation already in progress")
            self._run = InstallationRun(
                run_id=uuid.uuid4().hex[:12],
                phase=Phase.INSTALLING,
                current_step="Starting installation",
                started_at=datetime.utcnow().isoformat(),
            )
            snapshot = self._run.to_dict()
        self.events.publish(INSTALLATION_STATUS, snapshot)
        self.log(f"Installation run {snapshot['runId']} started")

    # ------------------------------
    # entry points
    # ------------------------------

    def trigger(self) -> threading.Thread:
        """Start a run in the background. Raises InstallationInProgress."""
        self._claim()
        self._thread = threading.Thread(target=self._execute, kwargs={"reraise": False}, name="installation", daemon=True)
        self._thread.start()
        return self._thread

    def run(self) -> Dict[str, Any]:
        """Run the whole pipeline on the calling thread and return the final status."""
        self._claim()
        self._execute(reraise=True)
        return self.status()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _execute(self, reraise: bool) -> None:
        try:
            self.install_dependencies()
            self.check_connectivity()
            self.install_nodes()
            self.configure_nodes()
            self.initialize_replica_set()
            self.seed_data()
            self._update(Phase.COMPLETED, 100, "Installation completed successfully")
            self.log("Full installation completed successfully!")
        except Exception as e:
            self._fail(e)
            if reraise:
                raise
            return

        if self.on_completed is not None:
            try:
                self.on_completed()
            except Exception:
                logger.exception("Post-installation hook failed")

    def _fail(self, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        with self._lock:
            self._run.error = message
        self.log(f"Installation failed: {message}", "error")
        self._update(Phase.ERROR, 0, f"Installation failed: {message}")

    # ------------------------------
    # pipeline steps
    # ------------------------------

    def install_dependencies(self) -> None:
        if self.skip_deps:
            self.log("Skipping dependency installation")
            return
        self._update(Phase.INSTALLING, 10, "Installing local dependencies")
        results = self.installer.install_local_dependencies()
        for i, result in enumerate(results):
            verb = "Already present" if result.skipped else "Completed"
            self._update(Phase.INSTALLING, 10 + (i + 1) * 10, f"{verb}: {result.command}")

    def check_connectivity(self) -> None:
        if self.skip_connectivity:
            self.log("Skipping connectivity checks")
            return
        self._update(Phase.INSTALLING, 40, "Checking SSH connectivity")
        report = self.checker.check(self.registry.nodes)
        self.registry.apply_connectivity(report)
        for name in self.registry.names():
            result = report[name]
            ok = result.get("network") and result.get("ssh")
            self.log(
                f"Connectivity to {name}: network={'OK' if result.get('network') else 'FAILED'}, "
                f"ssh={'OK' if result.get('ssh') else 'FAILED'}",
                "info" if ok else "error",
            )
        require_all(report)

    def install_nodes(self) -> None:
        self._update(Phase.INSTALLING, 50, "Installing MongoDB on nodes")
        for i, node in enumerate(self.registry.nodes):
            self.log(f"Installing MongoDB on {node.name}...")
            result = self.installer.install(node)
            if result.skipped:
                self.log(f"MongoDB already installed on {node.name}")
            else:
                self.log(f"MongoDB installed successfully on {node.name}")
            self._update(Phase.INSTALLING, 50 + (i + 1) * 10, f"MongoDB installed on {node.name}")

    def configure_nodes(self) -> None:
        self._update(Phase.CONFIGURING, 80, "Configuring MongoDB replication")
        for i, node in enumerate(self.registry.nodes):
            self.log(f"Configuring replication on {node.name}...")
            self.configurator.configure(node)
            self.log(f"Replication configured on {node.name}")
            self._update(Phase.CONFIGURING, min(94, 80 + (i + 1) * 5), f"Replication configured on {node.name}")

    def initialize_replica_set(self) -> None:
        self._update(Phase.CONFIGURING, 95, "Initializing replica set")
        topology = ReplicationTopology.from_config(self.registry.cfg)
        result = self.configurator.initialize_topology(topology, self.registry.primary)
        if result.skipped:
            self.log(f"Replica set {topology.name} was already initialized")
        else:
            self.log("Replica set initialized successfully")

    def seed_data(self) -> None:
        self._update(Phase.TESTING, 97, "Generating test data")
        db = self.connections.client(self.registry.primary)[self.registry.cfg.database_name]
        counts = self.seeder(
            db,
            record_count=self.settings.seed_records,
            include_files=self.settings.seed_files,
        )
        self.log(f"Test data generated successfully: {counts}")
