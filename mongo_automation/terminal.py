import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from mongo_automation.errors import ValidationError
from mongo_automation.executor import CommandExecutor

logger = logging.getLogger(__name__)


@dataclass
class TerminalSession:
    id: str
    node: str
    channel: object
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)


class TerminalSessions:
    """Interactive remote shells keyed by a generated session id."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor
        self._sessions: Dict[str, TerminalSession] = {}
        self._lock = threading.Lock()

    def create(self, node: str, cols: int = 80, rows: int = 24) -> str:
        channel = self.executor.open_shell(node, cols=cols, rows=rows)
        session_id = str(uuid.uuid4())
        with self._lock:
            self._sessions[session_id] = TerminalSession(id=session_id, node=node, channel=channel)
        logger.info("Terminal %s opened on %s", session_id, node)
        return session_id

    def get(self, session_id: str) -> Optional[TerminalSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def _require(self, session_id: str) -> TerminalSession:
        session = self.get(session_id)
        if session is None:
            raise ValidationError("Session not found", field="terminalId")
        return session

    def write(self, session_id: str, data: bytes) -> None:
        session = self._require(session_id)
        session.last_activity = datetime.now()
        session.channel.sendall(data)

    def read(self, session_id: str, size: int = 4096) -> bytes:
        """Block until output is available. Empty bytes means the shell ended."""
        session = self._require(session_id)
        data = session.channel.recv(size)
        session.last_activity = datetime.now()
        return data

    def close(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.channel.close()
            logger.info("Terminal %s on %s closed", session_id, session.node)

    def close_all(self) -> None:
        with self._lock:
            ids = list(self._sessions)
        for session_id in ids:
            self.close(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
