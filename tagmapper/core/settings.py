from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    readwise_base_url: str
    readwise_timeout: float
    rate_limit_max_retries: int
    rate_limit_default_delay: float
    cookie_secure: bool

    @staticmethod
    def from_env() -> "Settings":
        def _b(name: str, default: str) -> bool:
            return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
            readwise_base_url=os.getenv("READWISE_BASE_URL", "https://readwise.io/api").strip().rstrip("/"),
            readwise_timeout=_f("READWISE_TIMEOUT", "30"),
            rate_limit_max_retries=_i("RATE_LIMIT_MAX_RETRIES", "5"),
            rate_limit_default_delay=_f("RATE_LIMIT_DEFAULT_DELAY", "1.5"),
            cookie_secure=_b("COOKIE_SECURE", "1"),
        )
