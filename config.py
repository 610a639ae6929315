import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        warning_threshold: int,
        critical_threshold: int,
        activation_days: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.activation_days = activation_days
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINBOT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finbot.db"
    database_url = os.getenv("FINBOT_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINBOT_TIMEZONE", "Asia/Jakarta")
    secret_key = os.getenv(
        "FINBOT_SECRET_KEY",
        "3f1c9a0d6be24e57a8c1d2f0b9e7a6c54d3b2a1908f7e6d5c4b3a29180f7e6d5",
    )
    token_max_age_hours = int(os.getenv("FINBOT_TOKEN_MAX_AGE_HOURS", "24"))
    warning_threshold = int(os.getenv("FINBOT_WARNING_THRESHOLD", "80"))
    critical_threshold = int(os.getenv("FINBOT_CRITICAL_THRESHOLD", "90"))
    activation_days = int(os.getenv("FINBOT_ACTIVATION_DAYS", "7"))
    log_level = os.getenv("FINBOT_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        warning_threshold=warning_threshold,
        critical_threshold=critical_threshold,
        activation_days=activation_days,
        log_level=log_level,
    )
