import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        default_user_id: int,
        ip_block_threshold: int,
        ip_block_reset_minutes: int,
        holiday_timeout_secs: float,
        cache_refresh_minutes: int,
        trusted_proxies: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.default_user_id = default_user_id
        self.ip_block_threshold = ip_block_threshold
        self.ip_block_reset_minutes = ip_block_reset_minutes
        self.holiday_timeout_secs = holiday_timeout_secs
        self.cache_refresh_minutes = cache_refresh_minutes
        self.trusted_proxies = trusted_proxies


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    csrf_secret = os.getenv(
        "FINANCE_CSRF_SECRET",
        "5c1f0e2b9a7d48e3b6f4c2a1d0e9f8a7b6c5d4e3f2a1b0c9d8e7f6a5b4c3d2e1",
    )
    default_user_id = int(os.getenv("FINANCE_DEFAULT_USER_ID", "1"))
    ip_block_threshold = int(os.getenv("FINANCE_IP_BLOCK_THRESHOLD", "3"))
    ip_block_reset_minutes = int(os.getenv("FINANCE_IP_BLOCK_RESET_MINUTES", "5"))
    holiday_timeout_secs = float(os.getenv("FINANCE_HOLIDAY_TIMEOUT_SECS", "5"))
    cache_refresh_minutes = int(os.getenv("FINANCE_CACHE_REFRESH_MINUTES", "10"))
    trusted_proxies = os.getenv("FINANCE_TRUSTED_PROXIES", "127.0.0.1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        default_user_id=default_user_id,
        ip_block_threshold=ip_block_threshold,
        ip_block_reset_minutes=ip_block_reset_minutes,
        holiday_timeout_secs=holiday_timeout_secs,
        cache_refresh_minutes=cache_refresh_minutes,
        trusted_proxies=trusted_proxies,
    )
