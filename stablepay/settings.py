import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")

def _env_str_list(name: str, default: str = "") -> Tuple[str, ...]:
    raw = os.getenv(name, default) or ""
    items = [part.strip().upper() for part in raw.replace(";", ",").split(",") if part.strip()]
    return tuple(dict.fromkeys(items))

@dataclass(frozen=True)
class Settings:
    # App
    ENV: str = os.getenv("ENV", "dev")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Storage: "memory" (по умолчанию, без перезапусков) или "sql"
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory").strip().lower()
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./stablepay.db")

    # Payment requests
    REQUEST_TTL_SEC: int = int(os.getenv("REQUEST_TTL_SEC", "900"))  # 15 минут
    STATIC_REQUEST_TTL_SEC: int = int(os.getenv("STATIC_REQUEST_TTL_SEC", "2592000"))  # 30 дней
    SUPPORTED_CURRENCIES: Tuple[str, ...] = _env_str_list("SUPPORTED_CURRENCIES", "USDT,USDC")

    # Expiry sweeper
    SWEEP_ENABLED: bool = _env_bool("SWEEP_ENABLED", True)
    SWEEP_INTERVAL_SEC: float = float(os.getenv("SWEEP_INTERVAL_SEC", "30"))

    # Outgoing status webhook (optional)
    WEBHOOK_URL: str | None = os.getenv("WEBHOOK_URL") or None
    WEBHOOK_TIMEOUT_SEC: float = float(os.getenv("WEBHOOK_TIMEOUT_SEC", "10"))
    WEBHOOK_VERIFY_SSL: bool = _env_bool("WEBHOOK_VERIFY_SSL", True)
settings = Settings()
