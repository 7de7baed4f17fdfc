import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional


def _default_database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        # Railway/Heroku hand out postgres:// URLs, SQLAlchemy wants postgresql://
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        return url
    return f"sqlite:///{os.path.join(os.path.dirname(__file__), 'portal.db')}"


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass
class Settings:
    database_url: str = "sqlite://"
    secret_key: str = "devsecret_change_me"
    access_token_expire_minutes: int = 60 * 24
    invitation_ttl_days: int = 7
    min_password_length: int = 6
    login_max_attempts: int = 5
    login_window_seconds: int = 300
    password_reset_ttl_minutes: int = 60
    invitation_sweep_interval: int = 0
    host: str = "0.0.0.0"
    port: int = 8000
    public_base_url: str = "http://localhost:8000"
    mail_webhook_url: Optional[str] = None
    mail_from: str = "no-reply@objektbetreuer.local"
    profile_cache_path: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_default_database_url(),
            secret_key=os.getenv("SECRET_KEY", "devsecret_change_me"),
            access_token_expire_minutes=_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24),
            invitation_ttl_days=_int_env("INVITATION_TTL_DAYS", 7),
            min_password_length=_int_env("MIN_PASSWORD_LENGTH", 6),
            login_max_attempts=_int_env("LOGIN_MAX_ATTEMPTS", 5),
            login_window_seconds=_int_env("LOGIN_WINDOW_SECONDS", 300),
            password_reset_ttl_minutes=_int_env("PASSWORD_RESET_TTL_MINUTES", 60),
            invitation_sweep_interval=_int_env("INVITATION_SWEEP_INTERVAL", 3600),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int_env("PORT", 8000),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
            mail_webhook_url=os.getenv("MAIL_WEBHOOK_URL") or None,
            mail_from=os.getenv("MAIL_FROM", "no-reply@objektbetreuer.local"),
            profile_cache_path=os.getenv("PROFILE_CACHE_PATH") or None,
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level_name: Optional[str] = None):
    level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
