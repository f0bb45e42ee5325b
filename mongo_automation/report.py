"""Post-installation validation and the operator summary."""
import logging
from typing import List

import requests
from pymongo.errors import PyMongoError

from mongo_automation.context import AutomationContext
from mongo_automation.replication import has_primary

logger = logging.getLogger(__name__)


def validate_installation(ctx: AutomationContext, dashboard_url: str = None) -> List[str]:
    """Return a list of problems found; an empty list means the cluster is healthy."""
    problems = []
    primary = ctx.registry.primary

    logger.info("Checking replica set status...")
    try:
        status = ctx.connections.admin_command(primary, "replSetGetStatus")
        if not has_primary(status):
            problems.append("Replica set has no PRIMARY")
    except PyMongoError as e:
        problems.append(f"Replica set status unavailable: {e}")

    logger.info("Checking test data...")
    try:
        db = ctx.connections.client(primary)[ctx.cfg.database_name]
        employees = db.employees.count_documents({})
        if employees < 1:
            problems.append("No employees found in test data")
        else:
            logger.info("Found %d employees", employees)
    except PyMongoError as e:
        problems.append(f"Test data check failed: {e}")

    if dashboard_url:
        logger.info("Checking dashboard health...")
        try:
            resp = requests.get(f"{dashboard_url.rstrip('/')}/health", timeout=5)
            resp.raise_for_status()
        except requests.RequestException as e:
            problems.append(f"Dashboard health check failed: {e}")

    for p in problems:
        logger.error(p)
    if not problems:
        logger.info("Installation validation passed")
    return problems


def print_summary(ctx: AutomationContext) -> None:
    cfg = ctx.cfg
    lines = [
        "=" * 60,
        "HRM Labs MongoDB Cluster",
        "=" * 60,
        f"Replica set : {cfg.replica_set_name}",
        f"Database    : {cfg.database_name}",
        f"MongoDB     : {cfg.mongo_version}",
        "Nodes:",
    ]
    for n in cfg.nodes:
        flag = " (hidden)" if n.hidden else ""
        lines.append(f"  - {n.name:<28} {n.host}:{ctx.settings.mongodb_port}  {n.role}, priority {n.priority}{flag}")
    lines.append(f"Dashboard   : http://localhost:{ctx.settings.port}")
    run = ctx.sequencer.status()
    lines.append(f"Last run    : {run['phase']} ({run['progress']}%)")
    lines.append("=" * 60)
    for line in lines:
        logger.info(line)
