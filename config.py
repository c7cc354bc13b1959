import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        cron_secret: str,
        log_level: str,
        store_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.cron_secret = cron_secret
        self.log_level = log_level
        self.store_timeout_secs = store_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("POCKETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "pockets.db"
    database_url = os.getenv("POCKETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("POCKETS_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "POCKETS_TOKEN_SECRET",
        "5b0f3c9e7a41d2c68e19f04a7d3b6c2e91f8a0d4c7b2e5f6a3d9c1b8e7f4a2d0",
    )
    cron_secret = os.getenv("POCKETS_CRON_SECRET", "")
    log_level = os.getenv("POCKETS_LOG_LEVEL", "INFO").upper()
    store_timeout_secs = float(os.getenv("POCKETS_STORE_TIMEOUT_SECS", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        cron_secret=cron_secret,
        log_level=log_level,
        store_timeout_secs=store_timeout_secs,
    )
