"""Host hardening applied to the controller in production mode."""
import logging
from typing import List

from mongo_automation.config import PRODUCTION_LOG_FILE, Settings
from mongo_automation.executor import LOCAL, CommandExecutor, CommandResult

logger = logging.getLogger(__name__)

INTERNAL_NETWORK = "10.0.0.0/8"
FAIL2BAN_JAIL = "/etc/fail2ban/jail.d/hrmlabs-dashboard.conf"
FAIL2BAN_FILTER = "/etc/fail2ban/filter.d/hrmlabs-dashboard.conf"
DASHBOARD_LOGROTATE = "/etc/logrotate.d/hrmlabs-dashboard"


def firewall_commands(settings: Settings) -> List[str]:
    return [
        "systemctl enable --now firewalld",
        "firewall-cmd --permanent --add-service=ssh",
        "firewall-cmd --permanent --add-service=http",
        "firewall-cmd --permanent --add-service=https",
        f"firewall-cmd --permanent --add-port={settings.port}/tcp",
        (
            "firewall-cmd --permanent --add-rich-rule="
            f"\"rule family='ipv4' source address='{INTERNAL_NETWORK}' "
            f"port protocol='tcp' port='{settings.mongodb_port}' accept\""
        ),
        "firewall-cmd --reload",
    ]


def build_fail2ban_jail(settings: Settings, log_file: str) -> str:
    return f"""[hrmlabs-dashboard]
enabled = true
port = {settings.port}
filter = hrmlabs-dashboard
logpath = {log_file}
maxretry = 5
findtime = 600
bantime = 3600
"""


def build_fail2ban_filter() -> str:
    return """[Definition]
failregex = ^.* - WARNING - Rejected request from <HOST>.*$
ignoreregex =
"""


def build_dashboard_logrotate(log_file: str) -> str:
    return f"""{log_file} {{
    daily
    rotate 14
    compress
    delaycompress
    missingok
    notifempty
    copytruncate
}}
"""


def apply_production_hardening(executor: CommandExecutor, settings: Settings) -> List[CommandResult]:
    log_file = settings.log_file or PRODUCTION_LOG_FILE
    results = []

    logger.info("Configuring firewall...")
    for command in firewall_commands(settings):
        results.append(executor.run_checked(LOCAL, command, "firewall"))

    logger.info("Configuring fail2ban...")
    executor.write_file(LOCAL, FAIL2BAN_JAIL, build_fail2ban_jail(settings, log_file).encode("utf-8"))
    executor.write_file(LOCAL, FAIL2BAN_FILTER, build_fail2ban_filter().encode("utf-8"))
    results.append(executor.run_checked(LOCAL, "systemctl enable fail2ban && systemctl restart fail2ban", "fail2ban"))

    logger.info("Setting up log rotation...")
    executor.write_file(LOCAL, DASHBOARD_LOGROTATE, build_dashboard_logrotate(log_file).encode("utf-8"))

    if not settings.dashboard_api_key:
        logger.warning("DASHBOARD_API_KEY is not set; command, query and terminal endpoints are open")
    return results
