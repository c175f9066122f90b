from __future__ import annotations

import os
from dataclasses import dataclass

_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class Settings:
    """Application configuration loaded from environment variables."""

    app_name: str = os.getenv("APP_NAME", "Ledgerfolio")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./portfolio.db")
    sqlite_busy_timeout_ms: int = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "30000"))
    sqlite_journal_mode: str = os.getenv("SQLITE_JOURNAL_MODE", "WAL")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "20"))
    http_user_agent: str = os.getenv("HTTP_USER_AGENT", _DEFAULT_USER_AGENT)

    general_assets_ttl_minutes: int = int(os.getenv("GENERAL_ASSETS_TTL_MINUTES", "15"))
    funds_ttl_hours: int = int(os.getenv("FUNDS_TTL_HOURS", "4"))
    fund_probe_days: int = int(os.getenv("FUND_PROBE_DAYS", "5"))

    # A cached USD rate above this is treated as garbage and replaced by 1.0.
    usd_rate_sanity_limit: float = float(os.getenv("USD_RATE_SANITY_LIMIT", "500"))


settings = Settings()
