import os
from dataclasses import dataclass, field
from pathlib import Path


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class AppSettings:
    """Global app settings. Values are read from the environment at instantiation."""

    database_url: str = field(default_factory=lambda: _env("DATABASE_URL", "sqlite:///./data/oprep.db"))
    jwt_secret: str = field(default_factory=lambda: _env("JWT_SECRET", "change-me-in-production"))
    jwt_algorithm: str = "HS256"
    jwt_expiration_hours: int = field(default_factory=lambda: _env_int("JWT_EXPIRATION_HOURS", 24))
    webhook_secret: str = field(default_factory=lambda: _env("WEBHOOK_SECRET"))
    paystack_secret_key: str = field(default_factory=lambda: _env("PAYSTACK_SECRET_KEY"))
    paystack_base_url: str = field(default_factory=lambda: _env("PAYSTACK_BASE_URL", "https://api.paystack.co"))
    site_url: str = field(default_factory=lambda: _env("SITE_URL", "http://localhost:3000"))
    cors_origins: str = field(default_factory=lambda: _env("CORS_ORIGINS", "*"))
    rate_limit_max_requests: int = field(default_factory=lambda: _env_int("RATE_LIMIT_MAX_REQUESTS", 1000))
    rate_limit_window_seconds: int = field(default_factory=lambda: _env_int("RATE_LIMIT_WINDOW_SECONDS", 3600))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))
    default_max_attempts: int = field(default_factory=lambda: _env_int("DEFAULT_MAX_ATTEMPTS", 3))
    default_currency: str = "NGN"

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def server_root(self) -> Path:
        # server/core/config.py -> server
        return Path(__file__).resolve().parent.parent
