# orderflow/config.py
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str] = None
    pool_min: int = 1
    pool_max: int = 10
    store: str = "memory"  # memory | postgres
    notify_channel: str = "orderflow_changes"

    # payment confirmation polling
    poll_initial_seconds: float = 5.0
    poll_max_delay_seconds: float = 30.0
    poll_timeout_seconds: float = 300.0

    bottleneck_minutes: int = 120
    currency: str = "KES"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        return cls(
            database_url=database_url,
            pool_min=_env_int("APP_POOL_MIN", 1),
            pool_max=_env_int("APP_POOL_MAX", 10),
            store=os.getenv("ORDERFLOW_STORE", "postgres" if database_url else "memory"),
            notify_channel=os.getenv("ORDERFLOW_NOTIFY_CHANNEL", "orderflow_changes"),
            poll_initial_seconds=_env_float("ORDERFLOW_POLL_INITIAL_SECONDS", 5.0),
            poll_max_delay_seconds=_env_float("ORDERFLOW_POLL_MAX_DELAY_SECONDS", 30.0),
            poll_timeout_seconds=_env_float("ORDERFLOW_POLL_TIMEOUT_SECONDS", 300.0),
            bottleneck_minutes=_env_int("ORDERFLOW_BOTTLENECK_MINUTES", 120),
            currency=os.getenv("ORDERFLOW_CURRENCY", "KES"),
        )

    @classmethod
    def for_testing(cls) -> "Settings":
        return cls(store="memory")
