"""
Runtime configuration for the FoodONtracks API.

Everything is read from environment variables. `get_settings()` builds the
settings once per process; call `get_settings.cache_clear()` after changing the
environment (tests do).
"""

import os
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

from errors import ConfigurationError

DEV_JWT_SECRET = "dev_jwt_secret_change_me"
DEV_REFRESH_SECRET = "dev_refresh_secret_change_me"

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    environment: str = "development"
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    database_transactions: bool = True
    database_timeout_ms: int = Field(5000, gt=0)
    jwt_secret: str = DEV_JWT_SECRET
    refresh_token_secret: str = DEV_REFRESH_SECRET
    jwt_algorithm: str = "HS256"
    access_token_ttl_minutes: int = Field(15, gt=0)
    refresh_token_ttl_days: int = Field(7, gt=0)
    cookie_secure: bool = False
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            environment=os.getenv("ENVIRONMENT", "development").lower(),
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME") or None,
            database_transactions=_env_bool("DATABASE_TRANSACTIONS", True),
            database_timeout_ms=int(os.getenv("DATABASE_TIMEOUT_MS", 5000)),
            jwt_secret=os.getenv("JWT_SECRET", DEV_JWT_SECRET),
            refresh_token_secret=os.getenv("REFRESH_TOKEN_SECRET", DEV_REFRESH_SECRET),
            access_token_ttl_minutes=int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", 15)),
            refresh_token_ttl_days=int(os.getenv("REFRESH_TOKEN_TTL_DAYS", 7)),
            cookie_secure=_env_bool("COOKIE_SECURE", False),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", 8000)),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


def validate_env(settings: Settings) -> List[str]:
    """Check the environment for unsafe or missing values.

    Returns the list of problems. In production any problem is fatal and raises
    ConfigurationError; elsewhere the problems are only logged.
    """
    problems = []
    if not settings.database_url:
        problems.append("DATABASE_URL is not set")
    if not settings.database_name:
        problems.append("DATABASE_NAME is not set")
    if settings.jwt_secret == DEV_JWT_SECRET:
        problems.append("JWT_SECRET uses the development default")
    if settings.refresh_token_secret == DEV_REFRESH_SECRET:
        problems.append("REFRESH_TOKEN_SECRET uses the development default")
    if settings.jwt_secret == settings.refresh_token_secret:
        problems.append("JWT_SECRET and REFRESH_TOKEN_SECRET must differ")

    if problems and settings.is_production:
        raise ConfigurationError("Invalid environment: " + "; ".join(problems), details=problems)
    for problem in problems:
        logger.warning("env_check: %s", problem)
    return problems


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
