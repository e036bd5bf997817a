import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        aggregate_ttl_secs: int,
        max_commit_attempts: int,
        aggregate_refresh_minutes: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.aggregate_ttl_secs = aggregate_ttl_secs
        self.max_commit_attempts = max_commit_attempts
        self.aggregate_refresh_minutes = aggregate_refresh_minutes
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        data_dir = _ensure_data_dir()
        database_url = f"sqlite:///{data_dir / 'ledger.db'}"
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    aggregate_ttl_secs = int(os.getenv("LEDGER_AGGREGATE_TTL_SECS", "300"))
    max_commit_attempts = int(os.getenv("LEDGER_MAX_COMMIT_ATTEMPTS", "5"))
    aggregate_refresh_minutes = int(
        os.getenv("LEDGER_AGGREGATE_REFRESH_MINUTES", "15")
    )
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        aggregate_ttl_secs=aggregate_ttl_secs,
        max_commit_attempts=max(1, max_commit_attempts),
        aggregate_refresh_minutes=aggregate_refresh_minutes,
        log_level=log_level,
    )
