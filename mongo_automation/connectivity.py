import logging
import shlex
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List

from mongo_automation.common import Node
from mongo_automation.errors import AutomationError, NodeConnectionError
from mongo_automation.executor import LOCAL, CommandExecutor

logger = logging.getLogger(__name__)


class ConnectivityChecker:
    """Pre-flight reachability checks: one ping and one SSH round-trip per node."""

    def __init__(self, executor: CommandExecutor, timeout: float = 5.0):
        self.executor = executor
        self.timeout = timeout

    def _ping(self, node: Node) -> bool:
        wait = max(1, int(self.timeout))
        try:
            result = self.executor.run(
                LOCAL,
                f"ping -c 1 -W {wait} {shlex.quote(node.host)}",
                timeout=self.timeout + 1,
            )
        except AutomationError as e:
            logger.warning("Ping to %s failed: %s", node.name, e)
            return False
        return result.ok

    def _check_one(self, node: Node) -> Dict[str, bool]:
        network = self._ping(node)
        ssh = self.executor.probe(node, timeout=self.timeout)
        level = logging.INFO if network and ssh else logging.WARNING
        logger.log(
            level,
            "Connectivity %s: network=%s ssh=%s",
            node.name,
            "OK" if network else "FAILED",
            "OK" if ssh else "FAILED",
        )
        return {"network": network, "ssh": ssh}

    def check(self, nodes: Iterable[Node]) -> Dict[str, Dict[str, bool]]:
        nodes = list(nodes)
        report: Dict[str, Dict[str, bool]] = {}
        if not nodes:
            return report
        with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
            futures = {pool.submit(self._check_one, n): n for n in nodes}
            for fut in as_completed(futures):
                node = futures[fut]
                try:
                    report[node.name] = fut.result()
                except Exception as e:
                    logger.error("Connectivity check crashed for %s: %s", node.name, e)
                    report[node.name] = {"network": False, "ssh": False, "error": str(e)}
        return report


def failed_nodes(report: Dict[str, Dict[str, bool]]) -> List[str]:
    return [name for name, r in report.items() if not (r.get("network") and r.get("ssh"))]


def require_all(report: Dict[str, Dict[str, bool]]) -> None:
    failed = failed_nodes(report)
    if failed:
        raise NodeConnectionError(", ".join(sorted(failed)), "connectivity check failed")
