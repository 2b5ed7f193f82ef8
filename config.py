import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        audit_interval_minutes: int,
        recent_savings_limit: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.audit_interval_minutes = audit_interval_minutes
        self.recent_savings_limit = recent_savings_limit


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Jakarta")
    csrf_secret = os.getenv(
        "LEDGER_CSRF_SECRET",
        "5d0f4c2b9e7a41c38f26b1d04a7e93c2f8b6a0d51e4c7f92a3b8d6e1c0f5a472",
    )
    audit_interval_minutes = int(os.getenv("LEDGER_AUDIT_INTERVAL_MINUTES", "60"))
    recent_savings_limit = int(os.getenv("LEDGER_RECENT_SAVINGS_LIMIT", "10"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        audit_interval_minutes=audit_interval_minutes,
        recent_savings_limit=recent_savings_limit,
    )
