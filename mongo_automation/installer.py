import logging
from typing import List, Tuple

from mongo_automation.common import ClusterConfig, Node
from mongo_automation.executor import LOCAL, CommandExecutor, CommandResult

logger = logging.getLogger(__name__)

INSTALL_MARKER = "command -v mongod"


def build_repo_definition(mongo_version: str) -> str:
    return (
        f"[mongodb-org-{mongo_version}]\n"
        "name=MongoDB Repository\n"
        f"baseurl=https://repo.mongodb.org/yum/redhat/9/mongodb-org/{mongo_version}/x86_64/\n"
        "gpgcheck=1\n"
        "enabled=1\n"
        f"gpgkey=https://www.mongodb.org/static/pgp/server-{mongo_version}.asc\n"
    )


def repo_path(mongo_version: str) -> str:
    return f"/etc/yum.repos.d/mongodb-org-{mongo_version}.repo"


class Installer:
    """Idempotent MongoDB package installation on a node."""

    def __init__(self, executor: CommandExecutor, cfg: ClusterConfig):
        self.executor = executor
        self.cfg = cfg

    def is_installed(self, node: Node) -> Tuple[bool, CommandResult]:
        result = self.executor.run(node, INSTALL_MARKER)
        return result.ok and bool(result.stdout.strip()), result

    def install(self, node: Node) -> CommandResult:
        installed, probe = self.is_installed(node)
        if installed:
            logger.info("MongoDB already installed on %s (%s)", node.name, probe.stdout.strip())
            probe.skipped = True
            return probe

        version = self.cfg.mongo_version
        logger.info("Installing MongoDB %s on %s...", version, node.name)
        self.executor.write_file(node, repo_path(version), build_repo_definition(version).encode("utf-8"))

        steps: List[Tuple[str, str]] = [
            ("refresh package index", "dnf makecache -y"),
            ("install mongodb-org", "dnf install -y mongodb-org"),
            ("create data directory", f"mkdir -p {self.cfg.db_path} && chown -R mongod:mongod {self.cfg.db_path}"),
            ("enable mongod service", "systemctl enable --now mongod"),
        ]
        result = None
        for step, command in steps:
            result = self.executor.run_checked(node, command, step)
        logger.info("MongoDB installed successfully on %s", node.name)
        return result

    def install_local_dependencies(self) -> List[CommandResult]:
        """Controller toolchain: mongosh, database tools and an SSH client."""
        results = []
        checks = [
            ("command -v mongosh", self._install_local_mongo_tools),
            ("command -v ssh && command -v curl", self._install_local_tools),
        ]
        for marker, install in checks:
            probe = self.executor.run(LOCAL, marker)
            if probe.ok:
                probe.skipped = True
                results.append(probe)
                continue
            results.append(install())
        return results

    def _install_local_mongo_tools(self) -> CommandResult:
        version = self.cfg.mongo_version
        self.executor.write_file(LOCAL, repo_path(version), build_repo_definition(version).encode("utf-8"))
        return self.executor.run_checked(
            LOCAL, "dnf install -y mongodb-mongosh mongodb-database-tools", "install MongoDB tools"
        )

    def _install_local_tools(self) -> CommandResult:
        return self.executor.run_checked(
            LOCAL, "dnf install -y openssh-clients curl wget nc", "install system tools"
        )
