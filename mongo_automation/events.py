import logging
import threading
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

INSTALLATION_LOG = "installation-log"
INSTALLATION_STATUS = "installation-status"
REPLICATION_STATUS = "replication-status"
NODE_STATS = "node-stats"
TEST_DATA_GENERATED = "test-data-generated"
LIVE_LOGS = "live-logs"

Subscriber = Callable[[str, Any], None]


class EventBus:
    """Thread-safe fan-out of (event, payload) pairs to subscribers.

    Publishers run on worker threads; the web gateway registers callbacks
    that hand events over to its event loop.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_id = 0

    def subscribe(self, callback: Subscriber) -> int:
        with self._lock:
            self._next_id += 1
            self._subscribers[self._next_id] = callback
            return self._next_id

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def publish(self, event: str, payload: Any) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            try:
                callback(event, payload)
            except Exception:
                # a broken subscriber must not break the publisher
                logger.exception("Subscriber failed handling %s", event)
