"""Environment configuration for the automation bundle."""
import os
from dataclasses import dataclass, field, replace
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


PRODUCTION_LOG_FILE = "/var/log/hrmlabs-dashboard.log"


@dataclass
class Settings:
    app_env: str = "development"
    port: int = 3000
    log_level: str = "INFO"
    log_file: Optional[str] = None

    ssh_user: str = "root"
    ssh_password: Optional[str] = None
    ssh_key_path: str = "~/.ssh/id_rsa"

    mongodb_port: int = 27017
    replica_set_name: str = "hrmlabsrs"
    database_name: str = "hrmlabs"
    mongo_version: str = "7.0"
    accounts_path: str = "./accounts.json"

    # Timeouts (in seconds)
    probe_timeout: float = 5.0
    ssh_timeout: float = 10.0
    ready_timeout: float = 60.0
    election_timeout: float = 60.0
    ready_interval: float = 2.0

    status_interval: float = 10.0
    metrics_interval: float = 30.0

    dashboard_api_key: Optional[str] = None
    seed_records: int = 100
    seed_files: bool = True

    redact_keys: tuple = field(default=("password", "api_key", "secret", "token"), repr=False)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_env=os.getenv("APP_ENV", os.getenv("NODE_ENV", "development")),
            port=_env_int("PORT", 3000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
            ssh_user=os.getenv("SSH_USER", "root"),
            ssh_password=os.getenv("SSH_PASSWORD") or None,
            ssh_key_path=os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"),
            mongodb_port=_env_int("MONGODB_PORT", 27017),
            replica_set_name=os.getenv("REPLICA_SET_NAME", "hrmlabsrs"),
            database_name=os.getenv("DATABASE_NAME", "hrmlabs"),
            mongo_version=os.getenv("MONGO_VERSION", "7.0"),
            accounts_path=os.getenv("ACCOUNTS_PATH", "./accounts.json"),
            probe_timeout=_env_float("PROBE_TIMEOUT", 5.0),
            ssh_timeout=_env_float("SSH_TIMEOUT", 10.0),
            ready_timeout=_env_float("READY_TIMEOUT", 60.0),
            election_timeout=_env_float("ELECTION_TIMEOUT", 60.0),
            status_interval=_env_float("STATUS_INTERVAL", 10.0),
            metrics_interval=_env_float("METRICS_INTERVAL", 30.0),
            dashboard_api_key=os.getenv("DASHBOARD_API_KEY") or None,
            seed_records=_env_int("SEED_RECORDS", 100),
        )

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def for_test_mode(self) -> "Settings":
        """Small dataset and short waits for throwaway lab runs."""
        return replace(
            self,
            app_env="test",
            seed_records=10,
            seed_files=False,
            ready_timeout=min(self.ready_timeout, 20.0),
            election_timeout=min(self.election_timeout, 30.0),
        )

    def redacted(self) -> dict:
        out = {}
        for key, value in self.__dict__.items():
            if key == "redact_keys":
                continue
            out[key] = "***" if value and any(k in key for k in self.redact_keys) else value
        return out
