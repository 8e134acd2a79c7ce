import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        token_max_age_hours: int,
        default_page_size: int,
        max_page_size: int,
        log_level: str,
        client_url: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.token_max_age_hours = token_max_age_hours
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.log_level = log_level
        self.client_url = client_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "ledger.db"
        database_url = f"sqlite:///{default_db}"
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    auth_secret = os.getenv(
        "LEDGER_AUTH_SECRET",
        "5d0c9a41f27be3e8a6d1c04b97f2e35a18c6d7e90b4f2a3c5e6d7f8091a2b3c4",
    )
    token_max_age_hours = int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "24"))
    default_page_size = int(os.getenv("LEDGER_DEFAULT_PAGE_SIZE", "10"))
    max_page_size = int(os.getenv("LEDGER_MAX_PAGE_SIZE", "100"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    client_url = os.getenv("LEDGER_CLIENT_URL", "http://localhost:3000")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        token_max_age_hours=token_max_age_hours,
        default_page_size=default_page_size,
        max_page_size=max_page_size,
        log_level=log_level,
        client_url=client_url,
    )
