import logging
import os
import posixpath
import socket
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple, Union

import paramiko
from paramiko import AutoAddPolicy
from paramiko.client import SSHClient

from mongo_automation.common import Node
from mongo_automation.config import Settings
from mongo_automation.errors import CommandError, NodeConnectionError, ValidationError

logger = logging.getLogger(__name__)

LOCAL = "local"
TIMEOUT_EXIT_CODE = 124

Target = Union[str, Node]


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    target: str
    command: str
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ok"] = self.ok
        return data


def make_ssh_client(node: Node, timeout: float) -> SSHClient:
    client = SSHClient()
    client.set_missing_host_key_policy(AutoAddPolicy())
    key_filename = None
    if node.ssh_key_path:
        path = os.path.expanduser(node.ssh_key_path)
        if os.path.exists(path):
            key_filename = path
    client.connect(
        node.host,
        port=node.ssh_port,
        username=node.user,
        password=node.ssh_password,
        key_filename=key_filename,
        look_for_keys=False,
        allow_agent=key_filename is None and not node.ssh_password,
        timeout=timeout,
        banner_timeout=timeout,
        auth_timeout=timeout,
    )
    return client


def _ensure_remote_dir(sftp, remote_dir: str):
    parts = remote_dir.strip("/").split("/") if remote_dir.strip("/") else []
    cur = "/"
    for p in parts:
        cur = posixpath.join(cur, p)
        try:
            sftp.stat(cur)
        except IOError:
            sftp.mkdir(cur)


def read_streams(stdout, stderr) -> Tuple[bytes, bytes]:
    """Read both channel streams to EOF at the same time.

    A command that fills the stderr window blocks until stderr is read, so
    reading stdout to EOF first would never return.
    """
    with ThreadPoolExecutor(max_workers=1) as pool:
        err = pool.submit(stderr.read)
        out = stdout.read()
        return out, err.result()


def _exit_code(returncode: int) -> int:
    # signal-terminated children report negative codes
    return returncode if returncode >= 0 else 128 - returncode


class CommandExecutor:
    """Runs shell commands locally or over one cached SSH connection per node."""

    def __init__(
        self,
        settings: Settings,
        resolve: Callable[[str], Optional[Node]],
        client_factory: Callable[[Node, float], SSHClient] = make_ssh_client,
    ):
        self.settings = settings
        self._resolve = resolve
        self._client_factory = client_factory
        self._clients: Dict[str, SSHClient] = {}
        self._lock = threading.Lock()

    # ------------------------------
    # connection cache
    # ------------------------------

    def _node(self, target: Target) -> Node:
        if isinstance(target, Node):
            return target
        node = self._resolve(target)
        if node is None:
            raise ValidationError(f"Unknown node: {target}", field="node")
        return node

    def _connect(self, node: Node, timeout: Optional[float] = None) -> SSHClient:
        try:
            return self._client_factory(node, timeout or self.settings.ssh_timeout)
        except paramiko.AuthenticationException as e:
            raise NodeConnectionError(node.name, f"authentication failed: {e}") from e
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise NodeConnectionError(node.name, f"cannot connect to {node.host}:{node.ssh_port}: {e}") from e

    def client(self, target: Target) -> SSHClient:
        node = self._node(target)
        with self._lock:
            cached = self._clients.get(node.name)
        if cached is not None:
            transport = cached.get_transport()
            if transport is not None and transport.is_active():
                return cached
            self.drop(node.name)

        client = self._connect(node)
        with self._lock:
            existing = self._clients.get(node.name)
            if existing is not None:
                # another thread won the race; keep its connection
                client.close()
                return existing
            self._clients[node.name] = client
        logger.info("SSH connected to %s (%s)", node.name, node.host)
        return client

    def connected(self, name: str) -> bool:
        with self._lock:
            return name in self._clients

    def drop(self, target: Target) -> None:
        name = target.name if isinstance(target, Node) else target
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

    # ------------------------------
    # execution
    # ------------------------------

    def run(self, target: Target, command: str, timeout: Optional[float] = None) -> CommandResult:
        if not command or not command.strip():
            raise ValidationError("Command is required", field="command")
        if isinstance(target, str) and target == LOCAL:
            return self._run_local(command, timeout)
        return self._run_remote(self._node(target), command, timeout)

    def run_checked(self, target: Target, command: str, step: str, timeout: Optional[float] = None) -> CommandResult:
        result = self.run(target, command, timeout=timeout)
        if not result.ok:
            raise CommandError(f"{step} failed on {result.target} (exit {result.exit_code})", result)
        return result

    def _run_local(self, command: str, timeout: Optional[float]) -> CommandResult:
        logger.debug("local$ %s", command)
        try:
            proc = subprocess.run(["bash", "-c", command], capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_text(e.stdout),
                stderr=f"timed out after {timeout}s",
                target=LOCAL,
                command=command,
            )
        return CommandResult(
            exit_code=_exit_code(proc.returncode),
            stdout=proc.stdout,
            stderr=proc.stderr,
            target=LOCAL,
            command=command,
        )

    def _run_remote(self, node: Node, command: str, timeout: Optional[float]) -> CommandResult:
        client = self.client(node)
        logger.debug("%s$ %s", node.name, command)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            raw_out, raw_err = read_streams(stdout, stderr)
            out = raw_out.decode("utf-8", errors="ignore")
            err = raw_err.decode("utf-8", errors="ignore")
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout:
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="",
                stderr=f"timed out after {timeout}s",
                target=node.name,
                command=command,
            )
        except (paramiko.SSHException, socket.error, EOFError) as e:
            self.drop(node)
            raise NodeConnectionError(node.name, f"SSH channel failed: {e}") from e
        return CommandResult(
            exit_code=_exit_code(exit_status),
            stdout=out,
            stderr=err,
            target=node.name,
            command=command,
        )

    def write_file(self, target: Target, remote_path: str, data: bytes, mode: int = 0o644) -> None:
        if isinstance(target, str) and target == LOCAL:
            directory = os.path.dirname(remote_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(remote_path, "wb") as f:
                f.write(data)
            os.chmod(remote_path, mode)
            return

        node = self._node(target)
        client = self.client(node)
        try:
            sftp = client.open_sftp()
            try:
                _ensure_remote_dir(sftp, posixpath.dirname(remote_path))
                with sftp.file(remote_path, "wb") as f:
                    f.write(data)
                sftp.chmod(remote_path, mode)
            finally:
                sftp.close()
        except (paramiko.SSHException, socket.error, EOFError) as e:
            self.drop(node)
            raise NodeConnectionError(node.name, f"SFTP write to {remote_path} failed: {e}") from e

    def open_shell(self, target: Target, cols: int = 80, rows: int = 24) -> paramiko.Channel:
        node = self._node(target)
        client = self.client(node)
        try:
            return client.invoke_shell(term="xterm-color", width=cols, height=rows)
        except paramiko.SSHException as e:
            self.drop(node)
            raise NodeConnectionError(node.name, f"cannot open shell: {e}") from e

    def probe(self, target: Target, timeout: float) -> bool:
        """Fresh, bounded SSH round-trip. Never touches the cache."""
        node = self._node(target)
        try:
            client = self._connect(node, timeout=timeout)
        except NodeConnectionError as e:
            logger.warning("SSH probe to %s failed: %s", node.name, e)
            return False
        try:
            _, stdout, _ = client.exec_command("echo 'SSH OK'", timeout=timeout)
            out = stdout.read().decode("utf-8", errors="ignore")
            return stdout.channel.recv_exit_status() == 0 and "SSH OK" in out
        except (paramiko.SSHException, socket.error, EOFError) as e:
            logger.warning("SSH probe to %s failed: %s", node.name, e)
            return False
        finally:
            client.close()


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return value
