import os
from dataclasses import dataclass, field
from typing import Optional

from .model.varieties import VarietyPool, DEFAULT_POOL


# ----------------------------
# Config & Constants
# ----------------------------
MIN_ADVANCE_PERCENT = 10
RESERVATION_HOURS = 72


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./nursery.db"
    intent_backend: str = "redis"  # 'redis' | 'pg'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    min_advance_percent: int = MIN_ADVANCE_PERCENT
    reservation_hours: int = RESERVATION_HOURS
    expiry_sweep_seconds: int = 300
    enforce_variety_assignment: bool = True

    payment_gateway: str = "mock"  # 'mock' | 'razorpay'
    gateway_key_id: Optional[str] = None
    gateway_key_secret: Optional[str] = None
    gateway_base_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"
    intent_ttl_seconds: int = 30 * 60

    log_level: str = "INFO"
    pool: VarietyPool = field(default_factory=lambda: DEFAULT_POOL)

    @property
    def reservation_seconds(self) -> int:
        return self.reservation_hours * 3600


def load_settings() -> Settings:
    """Read the environment once; the result is passed around read-only."""
    env = os.environ.get
    return Settings(
        database_url=env("DATABASE_URL", "sqlite:///./nursery.db"),
        intent_backend=env("INTENT_BACKEND", "redis").lower(),
        redis_url=env("REDIS_URL", "redis://127.0.0.1:6379"),
        redis_max_conn=int(env("REDIS_MAX_CONN", "64")),
        min_advance_percent=int(
            env("MIN_ADVANCE_PERCENT", str(MIN_ADVANCE_PERCENT))
        ),
        reservation_hours=int(
            env("RESERVATION_HOURS", str(RESERVATION_HOURS))
        ),
        expiry_sweep_seconds=int(env("EXPIRY_SWEEP_SECONDS", "300")),
        enforce_variety_assignment=_env_bool(
            "ENFORCE_VARIETY_ASSIGNMENT", True
        ),
        payment_gateway=env("PAYMENT_GATEWAY", "mock").lower(),
        gateway_key_id=env("GATEWAY_KEY_ID") or None,
        gateway_key_secret=env("GATEWAY_KEY_SECRET") or None,
        gateway_base_url=env(
            "GATEWAY_BASE_URL", "https://api.razorpay.com/v1"
        ),
        currency=env("CURRENCY", "INR"),
        intent_ttl_seconds=int(env("INTENT_TTL_SECONDS", str(30 * 60))),
        log_level=env("LOG_LEVEL", "INFO").upper(),
    )
