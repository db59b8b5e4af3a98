import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        environment: str,
        storage_timeout_secs: float,
        reconnect_initial_delay_secs: float,
        reconnect_max_delay_secs: float,
        reconnect_max_attempts: int,
        health_interval_secs: float,
        cors_origins: list[str],
        host: str,
        port: int,
        shutdown_grace_secs: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.environment = environment
        self.storage_timeout_secs = storage_timeout_secs
        self.reconnect_initial_delay_secs = reconnect_initial_delay_secs
        self.reconnect_max_delay_secs = reconnect_max_delay_secs
        self.reconnect_max_attempts = reconnect_max_attempts
        self.health_interval_secs = health_interval_secs
        self.cors_origins = cors_origins
        self.host = host
        self.port = port
        self.shutdown_grace_secs = shutdown_grace_secs

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONEY_MANAGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("MONEY_MANAGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "money_manager.db"
        database_url = f"sqlite:///{default_db}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("MONEY_MANAGER_TIMEZONE", "UTC"),
        environment=os.getenv("MONEY_MANAGER_ENV", "development").lower(),
        storage_timeout_secs=float(
            os.getenv("MONEY_MANAGER_STORAGE_TIMEOUT_SECS", "5")
        ),
        reconnect_initial_delay_secs=float(
            os.getenv("MONEY_MANAGER_RECONNECT_INITIAL_DELAY_SECS", "1")
        ),
        reconnect_max_delay_secs=float(
            os.getenv("MONEY_MANAGER_RECONNECT_MAX_DELAY_SECS", "60")
        ),
        reconnect_max_attempts=int(
            os.getenv("MONEY_MANAGER_RECONNECT_MAX_ATTEMPTS", "10")
        ),
        health_interval_secs=float(
            os.getenv("MONEY_MANAGER_HEALTH_INTERVAL_SECS", "30")
        ),
        cors_origins=_split_csv(os.getenv("MONEY_MANAGER_CORS_ORIGINS", "*")),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        shutdown_grace_secs=int(os.getenv("MONEY_MANAGER_SHUTDOWN_GRACE_SECS", "10")),
    )
