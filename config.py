import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        wallet_resolution_attempts: int,
        wallet_resolution_delay_secs: float,
        reconcile_interval_minutes: int,
        default_account_id: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.wallet_resolution_attempts = wallet_resolution_attempts
        self.wallet_resolution_delay_secs = wallet_resolution_delay_secs
        self.reconcile_interval_minutes = reconcile_interval_minutes
        self.default_account_id = default_account_id


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDLESS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendless.db"
    database_url = os.getenv("SPENDLESS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SPENDLESS_TIMEZONE", "UTC")
    # One initial read plus a single retry.
    attempts = max(1, int(os.getenv("SPENDLESS_WALLET_RESOLUTION_ATTEMPTS", "2")))
    delay = float(os.getenv("SPENDLESS_WALLET_RESOLUTION_DELAY_SECS", "0.5"))
    reconcile_minutes = int(os.getenv("SPENDLESS_RECONCILE_INTERVAL_MINUTES", "60"))
    default_account_id = int(os.getenv("SPENDLESS_DEFAULT_ACCOUNT_ID", "1"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        wallet_resolution_attempts=attempts,
        wallet_resolution_delay_secs=delay,
        reconcile_interval_minutes=reconcile_minutes,
        default_account_id=default_account_id,
    )
