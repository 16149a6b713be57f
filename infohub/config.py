"""
Runtime configuration read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv


class ConfigurationError(Exception):
    """A required setting (credential, database, secret) is missing."""
    pass


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


@dataclass
class Settings:
    """Application settings."""
    database_url: Optional[str] = None
    cron_secret: str = ""
    admin_api_key: str = ""
    admin_password: str = ""
    auth_secret: str = ""
    cmc_api_key: str = ""
    upstream_timeout: float = 10.0
    snapshot_max_symbols: int = 100
    snapshot_retention_days: int = 90
    prune_probability: float = 0.17
    snapshot_interval_minutes: int = 0
    cache_max_entries: int = 1024
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from the process environment.

        Loads `.dev.env` first when it exists in the working directory.
        """
        if os.path.exists('.dev.env'):
            load_dotenv('.dev.env')

        return cls(
            database_url=os.environ.get("POSTGRES_URL") or os.environ.get("DATABASE_URL") or None,
            cron_secret=os.environ.get("CRON_SECRET", ""),
            admin_api_key=os.environ.get("ADMIN_API_KEY", "").strip(),
            admin_password=os.environ.get("ADMIN_PASSWORD", ""),
            auth_secret=os.environ.get("AUTH_SECRET", ""),
            cmc_api_key=os.environ.get("CMC_API_KEY", ""),
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT_SECONDS", 10.0),
            snapshot_max_symbols=_env_int("SNAPSHOT_MAX_SYMBOLS", 100),
            snapshot_retention_days=_env_int("SNAPSHOT_RETENTION_DAYS", 90),
            prune_probability=_env_float("PRUNE_PROBABILITY", 0.17),
            snapshot_interval_minutes=_env_int("SNAPSHOT_INTERVAL_MINUTES", 0),
            cache_max_entries=_env_int("CACHE_MAX_ENTRIES", 1024),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
