"""
Shared fixtures: scripted SSH hosts and an in-memory replica set.

Nothing here opens a socket. Remote commands are answered by FakeHost rules
and database commands by FakeMongoCluster.
"""

import io
import socket
from datetime import datetime, timedelta
from typing import Dict, List
from unittest.mock import MagicMock

import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from mongo_automation.common import default_config
from mongo_automation.config import Settings
from mongo_automation.context import AutomationContext


PRIMARY = "hrmlabs-mongo-primary"
SECONDARY = "hrmlabs-mongo-secondary"
ANALYTICS = "hrmlabs-mongo-analytics"
NODE_NAMES = [PRIMARY, SECONDARY, ANALYTICS]


# ------------------------------
# SSH
# ------------------------------


class FakeStream:
    def __init__(self, data: bytes, exit_status: int):
        self._data = data
        self.channel = MagicMock()
        self.channel.recv_exit_status.return_value = exit_status

    def read(self) -> bytes:
        return self._data


class _RemoteFile(io.BytesIO):
    def __init__(self, files: Dict[str, bytes], path: str):
        super().__init__()
        self._files = files
        self._path = path

    def close(self):
        if not self.closed:
            self._files[self._path] = self.getvalue()
        super().close()


class FakeSFTP:
    def __init__(self, host: "FakeHost"):
        self.host = host

    def stat(self, path):
        if path not in self.host.dirs:
            raise IOError(path)

    def mkdir(self, path):
        self.host.dirs.add(path)

    def file(self, path, mode="r"):
        return _RemoteFile(self.host.files, path)

    def chmod(self, path, mode):
        self.host.modes[path] = mode

    def close(self):
        pass


class FakeHost:
    """A remote machine answering commands from (fragment -> result) rules."""

    def __init__(self, name: str):
        self.name = name
        self.commands: List[str] = []
        self.files: Dict[str, bytes] = {}
        self.modes: Dict[str, int] = {}
        self.dirs = {"/", "/tmp", "/etc"}
        self.rules = []
        self.down = False
        self.connects = 0
        self.shell = MagicMock(name=f"{name}-shell")

    def on(self, fragment: str, exit_code=0, stdout: str = "", stderr: str = ""):
        """Newest rule wins. ``exit_code`` may be a callable returning (code, out, err)."""
        if callable(exit_code):
            self.rules.insert(0, (fragment, exit_code))
        else:
            self.rules.insert(0, (fragment, (exit_code, stdout, stderr)))

    def respond(self, command: str):
        self.commands.append(command)
        for fragment, result in self.rules:
            if fragment in command:
                return result(command) if callable(result) else result
        return 0, "", ""

    def ran(self, fragment: str) -> bool:
        return any(fragment in c for c in self.commands)


class FakeSSHClient:
    def __init__(self, host: FakeHost):
        self.host = host
        self.active = True

    def exec_command(self, command, timeout=None):
        code, out, err = self.host.respond(command)
        return None, FakeStream(out.encode("utf-8"), code), FakeStream(err.encode("utf-8"), code)

    def get_transport(self):
        transport = MagicMock()
        transport.is_active.return_value = self.active
        return transport

    def open_sftp(self):
        return FakeSFTP(self.host)

    def invoke_shell(self, term="vt100", width=80, height=24):
        return self.host.shell

    def close(self):
        self.active = False


class FakeFleet:
    def __init__(self, names):
        self.hosts = {n: FakeHost(n) for n in names}

    def __getitem__(self, name) -> FakeHost:
        return self.hosts[name]

    def factory(self, node, timeout):
        host = self.hosts[node.name]
        if host.down:
            raise socket.error(f"connect to {node.host} refused")
        host.connects += 1
        return FakeSSHClient(host)

    def mark_installed(self):
        for host in self.hosts.values():
            host.on("command -v mongod", 0, "/usr/bin/mongod\n")


# ------------------------------
# MongoDB
# ------------------------------


class FakeMongoCluster:
    """Replica set state shared by every FakeMongoClient."""

    def __init__(self, port: int = 27017):
        self.port = port
        self.config = None
        self.initiate_calls = []
        self.elect = True
        self.down = set()
        self.employees = 10
        self.clients_created = 0
        self.commands: List = []

    def status(self):
        if self.config is None:
            raise OperationFailure("no replset config has been received", code=94)
        now = datetime(2024, 1, 1, 12, 0, 0)
        members = []
        for m in self.config["members"]:
            if m["_id"] == 0:
                state = "PRIMARY" if self.elect else "SECONDARY"
                optime = now
            else:
                state = "SECONDARY"
                optime = now - timedelta(seconds=m["_id"])
            members.append({"_id": m["_id"], "name": m["host"], "stateStr": state, "health": 1, "optimeDate": optime})
        return {"set": self.config["_id"], "ok": 1, "members": members}

    def command(self, node, database, spec):
        if node.name in self.down:
            raise ServerSelectionTimeoutError(f"{node.host}:{self.port}: connection refused")
        name = next(iter(spec))
        self.commands.append((node.name, database, name))
        if name == "ping":
            return {"ok": 1}
        if name == "replSetGetStatus":
            return self.status()
        if name == "replSetInitiate":
            doc = spec[name]
            self.initiate_calls.append(doc)
            self.config = doc
            return {"ok": 1}
        if name == "serverStatus":
            return {"uptime": 100, "connections": {"current": 3}, "network": {}, "opcounters": {"insert": 1}, "host": node.host}
        if name == "dbStats":
            return {"db": database, "collections": 4, "objects": 120, "ok": 1}
        return {"ok": 1, "command": name, "database": database}

    def factory(self, node, port):
        self.clients_created += 1
        return FakeMongoClient(self, node)


class FakeDatabase:
    def __init__(self, cluster: FakeMongoCluster, node, name: str):
        self._cluster = cluster
        self._node = node
        self.name = name
        self.employees = MagicMock()
        self.employees.count_documents.side_effect = lambda q: cluster.employees

    def command(
        self,
        command,
        value=1,
        check=True,
        allowable_errors=None,
        read_preference=None,
        codec_options=None,
        session=None,
        comment=None,
        **kwargs,
    ):
        # same argument handling as pymongo.database.Database.command
        if isinstance(command, str):
            spec = {command: value}
            spec.update(kwargs)
        else:
            spec = dict(command)
        return self._cluster.command(self._node, self.name, spec)


class FakeMongoClient:
    def __init__(self, cluster: FakeMongoCluster, node):
        self._cluster = cluster
        self._node = node
        self.admin = FakeDatabase(cluster, node, "admin")
        self.closed = False

    def __getitem__(self, name):
        return FakeDatabase(self._cluster, self._node, name)

    def close(self):
        self.closed = True


# ------------------------------
# fixtures
# ------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        accounts_path=str(tmp_path / "accounts.json"),
        ready_timeout=0.2,
        election_timeout=0.2,
        ready_interval=0.01,
        probe_timeout=1.0,
        status_interval=60.0,
        metrics_interval=60.0,
        seed_records=5,
        seed_files=False,
    )


@pytest.fixture
def cfg(settings):
    return default_config(settings)


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet(NODE_NAMES)


@pytest.fixture
def mongo() -> FakeMongoCluster:
    return FakeMongoCluster()


@pytest.fixture
def checker():
    """Connectivity checker reporting every node reachable."""
    fake = MagicMock()
    fake.check.side_effect = lambda nodes: {n.name: {"network": True, "ssh": True} for n in nodes}
    return fake


@pytest.fixture
def seeder():
    return MagicMock(return_value={"companies": 5, "departments": 5, "positions": 5, "employees": 5, "files": 0})


@pytest.fixture
def ctx(settings, cfg, fleet, mongo, checker, seeder):
    context = AutomationContext(
        settings,
        cfg=cfg,
        ssh_client_factory=fleet.factory,
        mongo_client_factory=mongo.factory,
        port_probe=lambda host, port, timeout: None,
        seeder=seeder,
        checker=checker,
    )
    context.sequencer.skip_deps = True
    context.sequencer.on_completed = MagicMock()
    yield context
    context.sequencer.join(timeout=5)
    context.close()
