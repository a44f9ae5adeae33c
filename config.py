import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        default_group_color: str,
        reconcile_attempts: int,
        log_level: str,
        cors_origins: list[str],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.default_group_color = default_group_color
        self.reconcile_attempts = reconcile_attempts
        self.log_level = log_level
        self.cors_origins = cors_origins


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "UTC")
    default_currency = os.getenv("BUDGET_DEFAULT_CURRENCY", "INR").upper()
    default_group_color = os.getenv("BUDGET_DEFAULT_GROUP_COLOR", "#6C63FF")
    reconcile_attempts = max(1, int(os.getenv("BUDGET_RECONCILE_ATTEMPTS", "3")))
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    cors_origins = [
        origin.strip()
        for origin in os.getenv("BUDGET_CORS_ORIGINS", "*").split(",")
        if origin.strip()
    ]
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        default_group_color=default_group_color,
        reconcile_attempts=reconcile_attempts,
        log_level=log_level,
        cors_origins=cors_origins,
    )
