"""
Configuration for Quota Rail

All settings come from environment variables; defaults suit local development.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    # "memory://" keeps every store in process memory
    database_url: str = "sqlite:///quota_rail.db"
    api_key: str = "dev-key-change-in-production"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    max_copies: int = 10
    refund_on_cancel: bool = True

    payment_expiry_minutes: int = 15
    payment_poll_interval_seconds: float = 5.0
    price_a4: int = 500
    price_a3: int = 1000
    currency: str = "VND"

    log_level: str = "INFO"
    log_format: str = "console"  # or "json"
    port: int = 8000
    debug: bool = False

    @property
    def use_memory_storage(self) -> bool:
        return self.database_url.startswith("memory")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///quota_rail.db"),
            api_key=os.environ.get("API_KEY", "dev-key-change-in-production"),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            max_copies=int(os.environ.get("MAX_COPIES", 10)),
            refund_on_cancel=_env_bool("REFUND_ON_CANCEL", True),
            payment_expiry_minutes=int(os.environ.get("PAYMENT_EXPIRY_MINUTES", 15)),
            payment_poll_interval_seconds=float(os.environ.get("PAYMENT_POLL_INTERVAL_SECONDS", 5.0)),
            price_a4=int(os.environ.get("PRICE_A4", 500)),
            price_a3=int(os.environ.get("PRICE_A3", 1000)),
            currency=os.environ.get("CURRENCY", "VND"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("LOG_FORMAT", "console").lower(),
            port=int(os.environ.get("PORT", 8000)),
            debug=_env_bool("DEBUG", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings from the environment, read once per process."""
    return Settings.from_env()
